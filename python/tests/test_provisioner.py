"""
Tests for the Resource Provisioner: desired-state derivation, planning and
tiered execution against an in-memory provider.
"""

import unittest

from kubestrap.deployment.provisioner import (
    desired_resources,
    open_ingress_problems,
    plan_changes,
    preview_plan,
    provision,
)
from kubestrap.errors import ConfigurationError, ProvisioningError
from kubestrap.models.node import NodeStatus, Outcome
from kubestrap.models.resources import ActionKind, ResourceKind, ResourceSpec
from kubestrap.models.topology import NodeRole

from fakes import FakeProvider, FakeSleep, make_record, make_topology


class TestDesiredResources(unittest.TestCase):
    def test_document_covers_every_node_and_the_load_balancer(self):
        topology = make_topology()
        specs = desired_resources(topology)
        instances = {s.name: s for s in specs if s.kind is ResourceKind.instance}
        self.assertEqual(len(instances), 9)
        self.assertEqual(instances["etcd-1"].properties["private_ip"], "10.43.0.21")
        self.assertEqual(instances["etcd-1"].properties["role"], "etcd")

        lbs = [s for s in specs if s.kind is ResourceKind.load_balancer]
        self.assertEqual(len(lbs), 1)
        self.assertEqual(
            lbs[0].properties["targets"], "controller-0,controller-1,controller-2"
        )

    def test_ingress_restricted_to_configured_range(self):
        specs = desired_resources(make_topology())
        ingress = {
            s.name: s.properties["cidr"]
            for s in specs
            if s.kind is ResourceKind.firewall_rule and s.name.startswith("ingress-")
        }
        self.assertEqual(
            ingress,
            {
                "ingress-ssh": "198.51.100.0/24",
                "ingress-api": "198.51.100.0/24",
                "ingress-icmp": "198.51.100.0/24",
            },
        )
        self.assertEqual(open_ingress_problems(specs), [])

    def test_properties_are_strings(self):
        for spec in desired_resources(make_topology()):
            for value in spec.properties.values():
                self.assertIsInstance(value, str, spec.address)


class TestPlanChanges(unittest.TestCase):
    def test_open_ingress_rule_is_rejected(self):
        rule = ResourceSpec(
            kind=ResourceKind.firewall_rule,
            name="ingress-any",
            properties={"cidr": "0.0.0.0/0", "direction": "ingress"},
        )
        with self.assertRaises(ConfigurationError):
            plan_changes([rule], [])


class TestProvision(unittest.IsolatedAsyncioTestCase):
    async def test_first_run_creates_everything(self):
        topology = make_topology()
        provider = FakeProvider()
        result = await provision(topology, provider, sleep=FakeSleep())

        self.assertEqual(result.outcome, Outcome.success)
        self.assertEqual(len(result.ready_nodes), 9)
        self.assertEqual(
            len(provider.mutating_calls()), len(desired_resources(topology))
        )
        worker = next(r for r in result.records if r.node_id == "worker-2")
        self.assertEqual(worker.private_ip, "10.43.0.32")
        self.assertEqual(worker.public_ip, "203.0.113.32")
        self.assertIsNotNone(result.load_balancer)

    async def test_second_run_is_a_no_op(self):
        topology = make_topology()
        provider = FakeProvider()
        first = await provision(topology, provider, sleep=FakeSleep())
        provider.calls.clear()

        second = await provision(
            topology, provider, previous_records=first.records, sleep=FakeSleep()
        )
        self.assertEqual(provider.mutating_calls(), [])
        self.assertEqual(second.applied, [])
        self.assertEqual(
            [r.private_ip for r in second.records],
            [r.private_ip for r in first.records],
        )

    async def test_instances_created_before_load_balancer(self):
        provider = FakeProvider()
        await provision(make_topology(), provider, sleep=FakeSleep())
        creates = [addr for action, addr in provider.calls if action == "create"]
        self.assertEqual(creates[0], "network/main")
        self.assertEqual(creates[-1], "load_balancer/api")
        last_instance = max(
            i for i, addr in enumerate(creates) if addr.startswith("instance/")
        )
        first_rule = min(
            i for i, addr in enumerate(creates) if addr.startswith("firewall_rule/")
        )
        self.assertLess(first_rule, last_instance)

    async def test_failed_node_does_not_roll_back_siblings(self):
        topology = make_topology()
        provider = FakeProvider(fail=["instance/worker-1"])
        sleep = FakeSleep()
        result = await provision(
            topology, provider, retries=3, retry_delay=2.0, sleep=sleep
        )

        self.assertEqual(result.outcome, Outcome.partial)
        self.assertEqual(list(result.failures), ["instance/worker-1"])
        failed = [r.node_id for r in result.failed_nodes]
        self.assertEqual(failed, ["worker-1"])
        self.assertEqual(len(result.ready_nodes), 8)
        self.assertNotIn("destroy", [action for action, _ in provider.calls])
        self.assertEqual(
            [c for c in provider.calls if c == ("create", "instance/worker-1")],
            [("create", "instance/worker-1")] * 3,
        )
        self.assertEqual(sleep.calls, [2.0, 2.0])
        with self.assertRaises(ProvisioningError) as ctx:
            result.raise_for_status()
        self.assertIn("instance/worker-1", str(ctx.exception))

        # retry converges only the missing node
        provider.fail.clear()
        provider.calls.clear()
        retried = await provision(
            topology, provider, previous_records=result.records, sleep=FakeSleep()
        )
        self.assertEqual(retried.outcome, Outcome.success)
        self.assertEqual(
            provider.mutating_calls(), [("create", "instance/worker-1")]
        )

    async def test_failed_network_blocks_later_tiers(self):
        provider = FakeProvider(fail=["network/main"])
        result = await provision(
            make_topology(), provider, retries=1, sleep=FakeSleep()
        )
        self.assertEqual(result.outcome, Outcome.failed)
        created = [addr for action, addr in provider.calls if action == "create"]
        self.assertEqual(created, ["network/main"])
        self.assertTrue(
            result.failures["instance/worker-0"].startswith("blocked by failed")
        )
        self.assertTrue(all(r.status is NodeStatus.failed for r in result.records))

    async def test_unusable_provider_is_a_provisioning_error(self):
        previous = [make_record("worker-0", "10.43.0.30")]
        provider = FakeProvider(fail=["prepare"])
        with self.assertRaises(ProvisioningError) as ctx:
            await provision(
                make_topology(),
                provider,
                previous_records=previous,
                sleep=FakeSleep(),
            )

        failures = ctx.exception.result.failures
        self.assertEqual(list(failures), ["provider/prepare"])
        self.assertIn("backend unreachable", failures["provider/prepare"])
        self.assertIn("provider/prepare", str(ctx.exception))
        self.assertEqual(ctx.exception.result.records, previous)
        self.assertEqual(provider.calls, [("prepare", "")])

    async def test_overlapping_ranges_rejected_before_any_provider_call(self):
        provider = FakeProvider()
        with self.assertRaises(ConfigurationError):
            topology = make_topology(
                roles={
                    "controller": {"count": 3, "first_offset": 10},
                    "etcd": {"count": 3, "first_offset": 12},
                    "worker": {"count": 3, "first_offset": 30},
                }
            )
            await provision(topology, provider, sleep=FakeSleep())
        self.assertEqual(provider.calls, [])

    async def test_changed_address_plan_is_rejected_without_provider_changes(self):
        provider = FakeProvider()
        await provision(make_topology(), provider, sleep=FakeSleep())
        provider.calls.clear()

        moved = make_topology(
            roles={
                "controller": {"count": 3, "first_offset": 10},
                "etcd": {"count": 3, "first_offset": 20},
                "worker": {"count": 3, "first_offset": 40},
            }
        )
        with self.assertRaises(ConfigurationError) as ctx:
            await provision(moved, provider, sleep=FakeSleep())
        self.assertIn("private_ip cannot change", str(ctx.exception))
        self.assertEqual(provider.mutating_calls(), [])

    async def test_removed_node_is_retained_until_decommissioned(self):
        provider = FakeProvider()
        first = await provision(make_topology(), provider, sleep=FakeSleep())
        smaller = make_topology(
            roles={
                "controller": {"count": 3, "first_offset": 10},
                "etcd": {"count": 3, "first_offset": 20},
                "worker": {"count": 2, "first_offset": 30},
            }
        )
        provider.calls.clear()
        retained = await provision(
            smaller, provider, previous_records=first.records, sleep=FakeSleep()
        )
        self.assertEqual(retained.retained, ["worker-2"])
        self.assertIn("worker-2", [r.node_id for r in retained.records])
        self.assertEqual(provider.mutating_calls(), [])

        plan = await preview_plan(smaller, provider, decommission=["worker-2"])
        self.assertEqual(
            [(a.action, a.address) for a in plan.actions],
            [(ActionKind.destroy, "instance/worker-2")],
        )

        removed = await provision(
            smaller,
            provider,
            previous_records=retained.records,
            decommission=["worker-2"],
            sleep=FakeSleep(),
        )
        self.assertNotIn("worker-2", [r.node_id for r in removed.records])
        self.assertIn(("destroy", "instance/worker-2"), provider.calls)

    async def test_decommissioning_a_declared_node_is_rejected(self):
        provider = FakeProvider()
        with self.assertRaises(ConfigurationError):
            await provision(
                make_topology(), provider, decommission=["worker-0"], sleep=FakeSleep()
            )
        self.assertEqual(provider.mutating_calls(), [])

    async def test_role_change_of_known_node_is_rejected(self):
        provider = FakeProvider()
        previous = [make_record("worker-0", "10.43.0.30")]
        result = await provision(
            make_topology(), provider, previous_records=previous, sleep=FakeSleep()
        )
        self.assertEqual(result.outcome, Outcome.success)

        wrong_role = [
            make_record("worker-0", "10.43.0.30").model_copy(
                update={"role": NodeRole.etcd}
            )
        ]
        with self.assertRaises(ConfigurationError):
            await provision(
                make_topology(),
                provider,
                previous_records=wrong_role,
                sleep=FakeSleep(),
            )


if __name__ == "__main__":
    unittest.main()
