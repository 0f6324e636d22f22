import unittest

from kubestrap.utils.async_retry import retry_call

from fakes import FakeSleep


class Flaky:
    def __init__(self, failures: int, exc: Exception) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


class TestRetryCall(unittest.IsolatedAsyncioTestCase):
    async def test_succeeds_after_failures_with_backoff(self):
        func = Flaky(2, RuntimeError("boom"))
        sleep = FakeSleep()
        result = await retry_call(
            func, retries=5, delay=1.0, backoff=2.0, sleep=sleep
        )
        self.assertEqual(result, "ok")
        self.assertEqual(func.calls, 3)
        self.assertEqual(sleep.calls, [1.0, 2.0])

    async def test_raises_final_error_when_exhausted(self):
        func = Flaky(10, RuntimeError("still broken"))
        sleep = FakeSleep()
        with self.assertRaises(RuntimeError):
            await retry_call(func, retries=3, delay=0.5, noisy=True, sleep=sleep)
        self.assertEqual(func.calls, 3)
        self.assertEqual(sleep.calls, [0.5, 0.5])

    async def test_other_errors_propagate_immediately(self):
        func = Flaky(1, KeyError("fatal"))
        sleep = FakeSleep()
        with self.assertRaises(KeyError):
            await retry_call(func, retries=3, retry_on=(RuntimeError,), sleep=sleep)
        self.assertEqual(func.calls, 1)
        self.assertEqual(sleep.calls, [])

    async def test_at_least_one_attempt(self):
        with self.assertRaises(ValueError):
            await retry_call(Flaky(0, RuntimeError()), retries=0)


if __name__ == "__main__":
    unittest.main()
