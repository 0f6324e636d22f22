"""
End-to-end orchestration tests: a full bootstrap against the in-memory
provider and executor, re-runs, failure journaling and the routes-only and
smoke-only entry points.
"""

import os
import stat
import tempfile
import unittest
from typing import List

from kubestrap.deployment.bootstrap import (
    bootstrap_cluster,
    cluster_service_names,
    reconcile_network_only,
    smoke_test_cluster,
    store_for,
)
from kubestrap.deployment.pki import certificate_subject_names
from kubestrap.errors import ConfigurationError, ProvisioningError, RoutingError
from kubestrap.models.install import ProbeSpec, RoleState
from kubestrap.models.network import ReconcilerState
from kubestrap.models.node import NodeRecord, NodeStatus
from kubestrap.models.settings import KubestrapSettings
from kubestrap.models.state import BarrierStep
from kubestrap.models.topology import NodeRole

from fakes import (
    LB_DNS_NAME,
    FakeExecutor,
    FakeProvider,
    FakeSleep,
    FakeSubnetSource,
    failing,
    make_topology,
)

SUBNETS = {
    "10.43.0.30": "10.200.0.0/24",
    "10.43.0.31": "10.200.1.0/24",
    "10.43.0.32": "10.200.2.0/24",
}


async def probes_pass(probe: ProbeSpec, members: List[NodeRecord]) -> None:
    return None


class TestBootstrap(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = KubestrapSettings(state_dir=self.tmp.name)
        self.topology = make_topology()
        self.store = store_for(self.settings, "demo")
        self.provider = FakeProvider()
        self.executor = FakeExecutor()

    def tearDown(self):
        self.tmp.cleanup()

    async def bootstrap(self, **kwargs):
        return await bootstrap_cluster(
            self.topology,
            self.settings,
            self.provider,
            self.executor,
            subnet_source=FakeSubnetSource(SUBNETS),
            probe_runner=probes_pass,
            sleep=FakeSleep(),
            **kwargs,
        )

    def mode(self, relative: str) -> int:
        return stat.S_IMODE(os.stat(self.store.path(relative)).st_mode)

    async def test_full_run_converges_and_persists_artifacts(self):
        report = await self.bootstrap()

        self.assertTrue(report.converged)
        self.assertEqual(report.api_endpoint, LB_DNS_NAME)
        self.assertEqual(len(report.network.routes), 6)
        self.assertIn(
            "network: routes-installed (6 route(s), 3 masquerade rule(s))",
            report.summary_lines(),
        )

        state = await self.store.load()
        self.assertEqual(state.journal.completed, BarrierStep.ordered())
        self.assertIsNotNone(state.journal.finished_at)
        self.assertIsNone(state.journal.error)
        self.assertEqual(state.journal.role_states[NodeRole.worker], RoleState.verified)
        self.assertEqual(state.pod_subnets["worker-1"], "10.200.1.0/24")
        self.assertEqual(len(state.records), 9)

        sans = certificate_subject_names(state.bundle.server_cert_pem)
        for name in [LB_DNS_NAME, "10.43.0.10", "203.0.113.10"]:
            self.assertIn(name, sans)
        for name in cluster_service_names(self.topology):
            self.assertIn(name, sans)

        self.assertEqual(self.mode("state.json"), 0o600)
        self.assertEqual(self.mode("ca-key.pem"), 0o600)
        self.assertEqual(self.mode("admin.kubeconfig"), 0o600)
        self.assertEqual(self.mode("ca.pem"), 0o644)
        self.assertIn(
            "worker-2", await self.store.read_file("inventory/worker.txt")
        )
        self.assertIsNotNone(
            await self.store.read_file("units/etcd-0/etcd.service")
        )
        self.assertIn(
            LB_DNS_NAME, await self.store.read_file("admin.kubeconfig")
        )

    async def test_second_run_changes_nothing(self):
        first = await self.bootstrap()
        self.provider.calls.clear()
        self.executor.uploads.clear()

        second = await self.bootstrap()
        self.assertTrue(second.converged)
        self.assertEqual(self.provider.mutating_calls(), [])
        self.assertFalse(second.certificate_changed)
        self.assertEqual(self.executor.uploads, [])
        for role_report in second.install.roles.values():
            self.assertEqual(role_report.changed_tasks, [])

        state = await self.store.load()
        self.assertEqual(
            state.bundle.server_cert_pem,
            (await self.store.read_file("kubernetes.pem")),
        )
        self.assertEqual(first.api_endpoint, second.api_endpoint)

    async def test_control_plane_endpoint_override(self):
        report = await self.bootstrap(control_plane_endpoint="k8s.example.com")
        self.assertEqual(report.api_endpoint, "k8s.example.com")
        state = await self.store.load()
        self.assertIn(
            "k8s.example.com", certificate_subject_names(state.bundle.server_cert_pem)
        )

    async def test_failed_provisioning_is_journaled(self):
        self.provider.fail.add("instance/worker-1")
        with self.assertRaises(ProvisioningError):
            await self.bootstrap()

        state = await self.store.load()
        self.assertEqual(state.journal.completed, [])
        self.assertIn("instance/worker-1", state.journal.error)
        self.assertFalse(state.journal.interrupted)
        failed = [r.node_id for r in state.records if r.status is NodeStatus.failed]
        self.assertEqual(failed, ["worker-1"])
        self.assertEqual(self.executor.commands, [])

        with self.assertRaises(ConfigurationError):
            await reconcile_network_only(
                self.topology,
                self.settings,
                self.executor,
                subnet_source=FakeSubnetSource(SUBNETS),
                sleep=FakeSleep(),
            )

        # the next run converges the missing node and carries on
        self.provider.fail.clear()
        self.provider.calls.clear()
        report = await self.bootstrap()
        self.assertTrue(report.converged)
        self.assertEqual(
            self.provider.mutating_calls(), [("create", "instance/worker-1")]
        )

    async def test_routing_failure_is_journaled_with_discovered_subnets(self):
        self.executor.respond(
            "ip route replace", failing("RTNETLINK answers: No route"), "worker-1"
        )
        with self.assertRaises(RoutingError) as ctx:
            await self.bootstrap()
        self.assertIn("worker-1", str(ctx.exception))

        state = await self.store.load()
        self.assertIn("worker-1", state.journal.error)
        self.assertIn(BarrierStep.install, state.journal.completed)
        self.assertNotIn(BarrierStep.network, state.journal.completed)
        self.assertEqual(state.pod_subnets["worker-2"], "10.200.2.0/24")

        self.executor.rules.clear()
        result = await reconcile_network_only(
            self.topology,
            self.settings,
            self.executor,
            subnet_source=FakeSubnetSource(SUBNETS),
            sleep=FakeSleep(),
        )
        self.assertEqual(result.state, ReconcilerState.routes_installed)
        state = await self.store.load()
        self.assertIn(BarrierStep.network, state.journal.completed)

    async def test_interrupted_run_is_reported_and_resumed(self):
        await self.bootstrap()
        state = await self.store.load()
        state.journal.begin()
        state.journal.complete(BarrierStep.provision)
        await self.store.save(state)

        with self.assertLogs("kubestrap.deployment.bootstrap", "WARNING") as logs:
            report = await self.bootstrap()
        self.assertTrue(report.converged)
        self.assertTrue(any("interrupted after provision" in m for m in logs.output))

    async def test_routes_only_after_install(self):
        await self.bootstrap()
        self.executor.commands.clear()

        result = await reconcile_network_only(
            self.topology,
            self.settings,
            self.executor,
            subnet_source=FakeSubnetSource(SUBNETS),
            sleep=FakeSleep(),
        )
        self.assertEqual(result.state, ReconcilerState.routes_installed)
        self.assertEqual(len(result.routes), 6)
        self.assertEqual(self.executor.ran("etcd-0"), [])

    async def test_smoke_runs_on_first_controller(self):
        await self.bootstrap()
        self.executor.commands.clear()
        self.executor.respond("get pods", "kubestrap-smoke-1 1/1 Running\n")

        result = await smoke_test_cluster(
            self.topology, self.settings, self.executor, timeout=10.0
        )
        self.assertTrue(result.available)
        self.assertTrue(self.executor.ran("controller-0", "create deployment"))
        self.assertEqual(self.executor.ran("controller-1"), [])


if __name__ == "__main__":
    unittest.main()
