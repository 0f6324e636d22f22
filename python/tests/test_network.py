"""
Tests for the Network Reconciler.
"""

import json
import unittest

from kubestrap.deployment.network import (
    CNI_BRIDGE_CONF,
    compute_routes,
    discover_pod_subnets,
    kubectl_subnet_source,
    parse_route_table,
    reconcile_network,
    stale_routes,
)
from kubestrap.errors import ReconciliationTimeout, RoutingError
from kubestrap.models.network import PodSubnetAssignment, ReconcilerState, Route
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.kubectl import parse_pod_cidrs

from fakes import (
    FakeClock,
    FakeExecutor,
    FakeSleep,
    FakeSubnetSource,
    failing,
    make_record,
)

POD_CIDR = "10.200.0.0/16"
NONMASQUERADE = "10.0.0.0/8"

WORKERS = [
    make_record("worker-0", "10.43.0.30"),
    make_record("worker-1", "10.43.0.31"),
    make_record("worker-2", "10.43.0.32"),
]
ALL_ASSIGNED = {
    "10.43.0.30": "10.200.0.0/24",
    "10.43.0.31": "10.200.1.0/24",
    "10.43.0.32": "10.200.2.0/24",
}


class TestRouteComputation(unittest.TestCase):
    def test_every_worker_routes_to_every_other(self):
        assignment = PodSubnetAssignment(
            subnets={
                "worker-0": "10.200.0.0/24",
                "worker-1": "10.200.1.0/24",
                "worker-2": "10.200.2.0/24",
            }
        )
        routes = compute_routes(WORKERS, assignment)
        self.assertEqual(len(routes), 6)
        for route in routes:
            self.assertNotEqual(route.destination, assignment.subnet_of(route.node_id))
        self.assertIn(
            Route(
                node_id="worker-0",
                destination="10.200.2.0/24",
                gateway="10.43.0.32",
                target_node_id="worker-2",
            ),
            routes,
        )

    def test_unassigned_worker_gets_no_routes(self):
        assignment = PodSubnetAssignment(
            subnets={"worker-0": "10.200.0.0/24", "worker-1": "10.200.1.0/24"}
        )
        routes = compute_routes(WORKERS, assignment)
        self.assertEqual(len(routes), 2)
        self.assertNotIn("worker-2", {r.node_id for r in routes})
        self.assertNotIn("10.43.0.32", {r.gateway for r in routes})

    def test_route_table_parsing(self):
        table = parse_route_table(
            "default via 10.43.0.1 dev eth0 proto dhcp\n"
            "10.43.0.0/24 dev eth0 proto kernel scope link src 10.43.0.30\n"
            "10.200.1.0/24 via 10.43.0.31 dev eth0\n"
        )
        self.assertEqual(
            table,
            [
                ("default", "10.43.0.1"),
                ("10.43.0.0/24", None),
                ("10.200.1.0/24", "10.43.0.31"),
            ],
        )

    def test_stale_routes_only_inside_pod_range(self):
        desired = [
            Route(
                node_id="worker-0",
                destination="10.200.1.0/24",
                gateway="10.43.0.31",
                target_node_id="worker-1",
            )
        ]
        table = [
            ("default", "10.43.0.1"),
            ("10.200.1.0/24", "10.43.0.31"),
            ("10.200.1.0/24", "10.43.0.99"),
            ("10.200.7.0/24", "10.43.0.40"),
            ("192.168.5.0/24", "10.43.0.5"),
        ]
        self.assertEqual(
            stale_routes(table, desired, POD_CIDR),
            ["10.200.1.0/24", "10.200.7.0/24"],
        )

    def test_pod_cidrs_from_node_list(self):
        raw = json.dumps(
            {
                "items": [
                    {
                        "metadata": {"name": "worker-0"},
                        "spec": {"podCIDR": "10.200.0.0/24"},
                        "status": {
                            "addresses": [
                                {"type": "InternalIP", "address": "10.43.0.30"}
                            ]
                        },
                    },
                    {
                        "metadata": {"name": "worker-1"},
                        "spec": {},
                        "status": {
                            "addresses": [
                                {"type": "InternalIP", "address": "10.43.0.31"}
                            ]
                        },
                    },
                ]
            }
        )
        self.assertEqual(
            parse_pod_cidrs(raw),
            {"10.43.0.30": "10.200.0.0/24", "10.43.0.31": ""},
        )


class TestReconcileNetwork(unittest.IsolatedAsyncioTestCase):
    async def test_full_pass_installs_routes_and_masquerade(self):
        executor = FakeExecutor()
        executor.respond("iptables -t nat -C", failing())
        source = FakeSubnetSource(
            {"10.43.0.30": "10.200.0.0/24", "10.43.0.31": "", "10.43.0.32": ""},
            ALL_ASSIGNED,
        )
        sleep = FakeSleep()
        result = await reconcile_network(
            WORKERS,
            source,
            executor,
            POD_CIDR,
            NONMASQUERADE,
            timeout=60.0,
            interval=5.0,
            sleep=sleep,
        )

        self.assertEqual(result.state, ReconcilerState.routes_installed)
        self.assertEqual(source.calls, 2)
        self.assertEqual(sleep.calls, [5.0])
        self.assertEqual(len(result.routes), 6)
        self.assertEqual(len(result.masquerade_rules), 3)
        self.assertEqual(result.unresolved, [])
        result.raise_for_status()

        self.assertEqual(
            executor.ran("worker-1", "ip route replace"),
            [
                "sudo ip route replace 10.200.0.0/24 via 10.43.0.30",
                "sudo ip route replace 10.200.2.0/24 via 10.43.0.32",
            ],
        )
        self.assertEqual(executor.ran("worker-0", "ip route replace 10.200.0.0"), [])
        for worker in WORKERS:
            self.assertEqual(
                executor.ran(worker.node_id, "iptables -t nat -A"),
                [
                    "sudo iptables -t nat -A POSTROUTING ! -d "
                    f"{NONMASQUERADE} -j MASQUERADE"
                ],
            )
        bridge = json.loads(executor.files["worker-2"][CNI_BRIDGE_CONF])
        self.assertEqual(bridge["ipam"]["ranges"], [[{"subnet": "10.200.2.0/24"}]])

    async def test_present_routes_are_not_reinstalled_and_stale_ones_removed(self):
        executor = FakeExecutor()
        executor.respond(
            "ip -4 route show",
            "default via 10.43.0.1 dev eth0\n"
            "10.200.1.0/24 via 10.43.0.31 dev eth0\n"
            "10.200.2.0/24 via 10.43.0.32 dev eth0\n"
            "10.200.9.0/24 via 10.43.0.39 dev eth0\n",
            node_id="worker-0",
        )
        result = await reconcile_network(
            WORKERS,
            FakeSubnetSource(ALL_ASSIGNED),
            executor,
            POD_CIDR,
            NONMASQUERADE,
            sleep=FakeSleep(),
        )

        self.assertEqual(executor.ran("worker-0", "ip route replace"), [])
        self.assertEqual(
            executor.ran("worker-0", "ip route del"),
            ["sudo ip route del 10.200.9.0/24"],
        )
        self.assertEqual(result.removed_routes, ["worker-0: 10.200.9.0/24"])
        self.assertEqual(executor.ran("worker-0", "iptables -t nat -A"), [])

    async def test_timeout_reports_unassigned_workers(self):
        executor = FakeExecutor()
        executor.respond(
            "ip -4 route show", "10.200.9.0/24 via 10.43.0.39 dev eth0\n"
        )
        partial = dict(ALL_ASSIGNED, **{"10.43.0.32": ""})
        source = FakeSubnetSource(partial)
        clock = FakeClock()
        sleep = FakeSleep(clock)
        result = await reconcile_network(
            WORKERS,
            source,
            executor,
            POD_CIDR,
            NONMASQUERADE,
            timeout=30.0,
            interval=10.0,
            sleep=sleep,
            clock=clock,
        )

        self.assertEqual(result.state, ReconcilerState.awaiting_assignments)
        self.assertEqual(result.unresolved, ["worker-2"])
        self.assertEqual(source.calls, 4)
        self.assertEqual(sleep.calls, [10.0, 10.0, 10.0])
        self.assertEqual(len(result.routes), 2)
        self.assertNotIn("10.43.0.32", {r.gateway for r in result.routes})
        self.assertEqual(executor.ran("worker-2", "ip route"), [])
        self.assertNotIn(CNI_BRIDGE_CONF, executor.files.get("worker-2", {}))
        self.assertEqual(executor.ran(pattern="ip route del"), [])
        self.assertEqual(result.removed_routes, [])
        self.assertEqual(len(result.masquerade_rules), 3)

        with self.assertRaises(ReconciliationTimeout) as ctx:
            result.raise_for_status()
        self.assertIn("worker-2", str(ctx.exception))

    async def test_failed_route_is_reported_against_its_worker(self):
        executor = FakeExecutor()
        executor.respond(
            "ip route replace",
            CommandError("Command failed with return code 2.", return_code=2),
            node_id="worker-1",
        )
        result = await reconcile_network(
            WORKERS,
            FakeSubnetSource(ALL_ASSIGNED),
            executor,
            POD_CIDR,
            NONMASQUERADE,
            sleep=FakeSleep(),
        )

        self.assertEqual(result.state, ReconcilerState.awaiting_assignments)
        self.assertEqual(list(result.failures), ["worker-1"])
        self.assertIn(
            "route 10.200.0.0/24 via 10.43.0.30", result.failures["worker-1"]
        )
        self.assertEqual(len(executor.ran("worker-1", "ip route replace")), 1)
        self.assertEqual(len(executor.ran("worker-0", "ip route replace")), 2)
        self.assertEqual(len(executor.ran("worker-2", "ip route replace")), 2)

        with self.assertRaises(RoutingError) as ctx:
            result.raise_for_status()
        self.assertIn("worker-1", str(ctx.exception))
        self.assertIn("return code 2", str(ctx.exception))

    async def test_kubectl_source_queries_first_controller(self):
        controller = make_record("controller-0", "10.43.0.10")
        node_list = {
            "items": [
                {
                    "spec": {"podCIDR": "10.200.0.0/24"},
                    "status": {
                        "addresses": [{"type": "InternalIP", "address": "10.43.0.30"}]
                    },
                }
            ]
        }
        executor = FakeExecutor()
        executor.respond("get nodes -o json", json.dumps(node_list))
        source = kubectl_subnet_source(executor, controller, "/tmp/admin.kubeconfig")

        self.assertEqual(await source(), {"10.43.0.30": "10.200.0.0/24"})
        self.assertEqual(
            executor.ran("controller-0"),
            [
                "sudo kubectl --kubeconfig /tmp/admin.kubeconfig "
                "get nodes -o json"
            ],
        )

    async def test_failed_queries_are_retried_until_deadline(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise failing("connection refused")
            return ALL_ASSIGNED

        clock = FakeClock()
        assignment = await discover_pod_subnets(
            WORKERS, flaky, 60.0, 10.0, sleep=FakeSleep(clock), clock=clock
        )
        self.assertEqual(len(calls), 3)
        self.assertEqual(assignment.unresolved([w.node_id for w in WORKERS]), [])
        self.assertEqual(assignment.subnet_of("worker-1"), "10.200.1.0/24")


if __name__ == "__main__":
    unittest.main()
