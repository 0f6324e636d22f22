import os
import tempfile
import unittest

from kubestrap.errors import ClusterLockedError
from kubestrap.utils.lock import cluster_lock


class TestClusterLock(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    async def test_second_run_fails_fast(self):
        async with cluster_lock(self.tmp.name, "demo") as lock_path:
            self.assertTrue(os.path.exists(lock_path))
            with self.assertRaises(ClusterLockedError) as ctx:
                async with cluster_lock(self.tmp.name, "demo"):
                    self.fail("lock acquired twice")
            self.assertIn("demo", str(ctx.exception))

        async with cluster_lock(self.tmp.name, "demo"):
            pass

    async def test_clusters_lock_independently(self):
        async with cluster_lock(self.tmp.name, "one"):
            async with cluster_lock(self.tmp.name, "two") as lock_path:
                self.assertTrue(lock_path.endswith(os.path.join("two", ".lock")))


if __name__ == "__main__":
    unittest.main()
