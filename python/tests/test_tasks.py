"""
Tests for idempotent task application on a single node.
"""

import unittest

from kubestrap.deployment.tasks import (
    apply_task,
    host_preparation_tasks,
    installed_paths,
)
from kubestrap.models.install import (
    CommandTask,
    EnableService,
    FetchBinary,
    InstallPackages,
    ServiceUnit,
    UploadFile,
)
from kubestrap.models.topology import NodeRole
from kubestrap.utils.async_command_runner import CommandError

from fakes import FakeExecutor, failing, make_record

NODE = make_record("worker-0", "10.43.0.30")


class TestApplyTask(unittest.IsolatedAsyncioTestCase):
    async def test_upload_only_when_content_differs(self):
        executor = FakeExecutor()
        task = UploadFile(path="/etc/demo.conf", content="a=1\n")
        changed_paths = set()

        self.assertTrue(await apply_task(executor, NODE, task, changed_paths))
        self.assertEqual(changed_paths, {"/etc/demo.conf"})
        self.assertFalse(await apply_task(executor, NODE, task, set()))
        self.assertEqual(executor.uploads, [("worker-0", "/etc/demo.conf")])

        updated = UploadFile(path="/etc/demo.conf", content="a=2\n")
        self.assertTrue(await apply_task(executor, NODE, updated, set()))
        self.assertEqual(executor.files["worker-0"]["/etc/demo.conf"], "a=2\n")

    async def test_unit_change_reloads_systemd(self):
        executor = FakeExecutor()
        unit = ServiceUnit(unit_name="kubelet", content="[Unit]\n")
        self.assertTrue(await apply_task(executor, NODE, unit, set()))
        self.assertEqual(
            executor.ran("worker-0", "daemon-reload"), ["sudo systemctl daemon-reload"]
        )
        self.assertIn("/etc/systemd/system/kubelet.service", executor.files["worker-0"])

        executor.commands.clear()
        self.assertFalse(await apply_task(executor, NODE, unit, set()))
        self.assertEqual(executor.ran("worker-0", "daemon-reload"), [])

    async def test_fetch_is_skipped_once_marker_matches(self):
        executor = FakeExecutor()
        task = FetchBinary(
            name="containerd",
            url="https://example.com/containerd-1.7.13.tar.gz",
            archive_members=["bin/containerd", "bin/ctr"],
        )
        changed_paths = set()
        self.assertTrue(await apply_task(executor, NODE, task, changed_paths))
        self.assertEqual(
            changed_paths, {"/usr/local/bin/containerd", "/usr/local/bin/ctr"}
        )
        self.assertEqual(len(executor.ran("worker-0", "curl -fsSL")), 1)

        executor.commands.clear()
        self.assertFalse(await apply_task(executor, NODE, task, set()))
        self.assertEqual(executor.ran("worker-0", "curl"), [])

        newer = task.model_copy(
            update={"url": "https://example.com/containerd-1.7.14.tar.gz"}
        )
        self.assertTrue(await apply_task(executor, NODE, newer, set()))

    def test_installed_paths_of_single_binary(self):
        task = FetchBinary(name="kubectl", url="https://example.com/kubectl")
        self.assertEqual(installed_paths(task), ["/usr/local/bin/kubectl"])

    async def test_command_applied_only_when_check_fails(self):
        executor = FakeExecutor()
        task = CommandTask(name="swap", check=["swap-check"], apply=["swap-off"])
        self.assertFalse(await apply_task(executor, NODE, task, set()))
        self.assertEqual(executor.ran("worker-0", "swap-off"), [])

        executor.respond("swap-check", failing())
        self.assertTrue(await apply_task(executor, NODE, task, set()))
        self.assertEqual(executor.ran("worker-0", "swap-off"), ["swap-off"])

    async def test_packages_installed_when_missing(self):
        executor = FakeExecutor()
        executor.respond("dpkg -s", failing("package 'socat' is not installed"))
        task = InstallPackages(packages=["socat", "conntrack"])
        self.assertTrue(await apply_task(executor, NODE, task, set()))
        [script] = executor.ran("worker-0", "apt-get install")
        self.assertIn("socat conntrack", script)

    async def test_mode_change_is_applied_without_rewriting(self):
        executor = FakeExecutor()
        task = UploadFile(path="/etc/kubestrap/key.pem", content="KEY\n")
        self.assertTrue(await apply_task(executor, NODE, task, set()))

        private = task.model_copy(update={"mode": "0600"})
        changed_paths = set()
        self.assertTrue(await apply_task(executor, NODE, private, changed_paths))
        self.assertEqual(
            executor.ran("worker-0", "chmod"),
            ["sudo chmod 0600 /etc/kubestrap/key.pem"],
        )
        self.assertEqual(executor.uploads, [("worker-0", "/etc/kubestrap/key.pem")])
        self.assertEqual(changed_paths, set())
        self.assertFalse(await apply_task(executor, NODE, private, set()))

    async def test_service_restarts_only_when_a_watched_file_changed(self):
        executor = FakeExecutor()
        kubeconfig = "/var/lib/kubelet/kubeconfig"
        binary = "/usr/local/bin/kubelet"
        executor.files["worker-0"] = {kubeconfig: "v1"}
        task = EnableService(unit_name="kubelet", watches=[kubeconfig, binary])

        # first restart records what the service was started with
        self.assertTrue(await apply_task(executor, NODE, task, set()))
        self.assertIn(task.fingerprint_path, executor.files["worker-0"])
        self.assertFalse(await apply_task(executor, NODE, task, {"/etc/other"}))
        self.assertEqual(len(executor.ran("worker-0", "restart")), 1)

        self.assertTrue(await apply_task(executor, NODE, task, {binary}))
        self.assertEqual(len(executor.ran("worker-0", "restart")), 2)

        executor.files["worker-0"][kubeconfig] = "v2"
        self.assertTrue(await apply_task(executor, NODE, task, {kubeconfig}))
        self.assertEqual(
            executor.ran("worker-0", "restart"),
            ["sudo systemctl restart kubelet"] * 3,
        )
        self.assertFalse(await apply_task(executor, NODE, task, set()))

    async def test_file_written_by_an_aborted_run_still_restarts(self):
        executor = FakeExecutor()
        cert = "/var/lib/kubernetes/kubernetes.pem"
        executor.files["worker-0"] = {cert: "old cert"}
        task = EnableService(unit_name="kube-apiserver", watches=[cert])
        self.assertTrue(await apply_task(executor, NODE, task, set()))

        # the new certificate landed, but that run failed before the restart
        executor.files["worker-0"][cert] = "new cert"
        executor.commands.clear()

        self.assertTrue(await apply_task(executor, NODE, task, set()))
        self.assertEqual(
            executor.ran("worker-0", "restart"),
            ["sudo systemctl restart kube-apiserver"],
        )
        self.assertFalse(await apply_task(executor, NODE, task, set()))

    async def test_failed_restart_leaves_the_fingerprint_unrecorded(self):
        executor = FakeExecutor()
        executor.respond("systemctl restart", failing("job failed"))
        task = EnableService(unit_name="etcd", watches=["/etc/etcd/etcd.pem"])
        with self.assertRaises(CommandError):
            await apply_task(executor, NODE, task, set())
        self.assertNotIn(task.fingerprint_path, executor.files.get("worker-0", {}))

    async def test_inactive_service_is_enabled_and_started(self):
        executor = FakeExecutor()
        executor.respond("is-enabled", failing("disabled"))
        executor.respond("is-active", failing("inactive"))
        task = EnableService(unit_name="etcd")
        self.assertTrue(await apply_task(executor, NODE, task, set()))
        self.assertEqual(
            executor.ran("worker-0", "sudo systemctl"),
            ["sudo systemctl enable etcd", "sudo systemctl restart etcd"],
        )


class TestHostPreparation(unittest.TestCase):
    def test_workers_get_conntrack(self):
        worker = host_preparation_tasks(NodeRole.worker)
        controller = host_preparation_tasks(NodeRole.controller)
        self.assertIsInstance(worker[-1], InstallPackages)
        self.assertIn("conntrack", worker[-1].packages)
        self.assertFalse(any(isinstance(t, InstallPackages) for t in controller))


if __name__ == "__main__":
    unittest.main()
