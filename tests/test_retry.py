import asyncio
import unittest

from _support import FAST_POLICY

from workflow.errors import (
    PermanentUnitError,
    TransientRemoteError,
    error_for_status,
    from_remote_exception,
)


class RetryPolicyTest(unittest.IsolatedAsyncioTestCase):

    async def test_transient_errors_are_retried_until_success(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientRemoteError("503")
            return 'ok'

        result = await FAST_POLICY.call(flaky, label="flaky")
        self.assertEqual(result, 'ok')
        self.assertEqual(len(attempts), 3)

    async def test_permanent_errors_are_not_retried(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise PermanentUnitError("404", reason='extraction-failed')

        with self.assertRaises(PermanentUnitError):
            await FAST_POLICY.call(broken, label="broken")
        self.assertEqual(len(attempts), 1)

    async def test_exhaustion_reraises_last_transient_error(self):
        attempts = []

        async def down():
            attempts.append(1)
            raise TransientRemoteError(f"503 #{len(attempts)}")

        with self.assertRaises(TransientRemoteError) as ctx:
            await FAST_POLICY.call(down, label="down")
        self.assertEqual(len(attempts), FAST_POLICY.max_attempts)
        self.assertIn('#3', str(ctx.exception))

    async def test_attempt_timeout_counts_as_transient(self):
        attempts = []

        async def slow_then_fast():
            attempts.append(1)
            if len(attempts) < 3:
                await asyncio.sleep(5)
            return 'done'

        result = await FAST_POLICY.with_timeout(0.05).call(slow_then_fast, label="slow")
        self.assertEqual(result, 'done')
        self.assertEqual(len(attempts), 3)


class ErrorClassificationTest(unittest.TestCase):

    def test_status_mapping(self):
        self.assertIsInstance(error_for_status(503, 'u', reason='x'), TransientRemoteError)
        self.assertIsInstance(error_for_status(429, 'u', reason='x'), TransientRemoteError)
        permanent = error_for_status(404, 'u', reason='extraction-failed')
        self.assertIsInstance(permanent, PermanentUnitError)
        self.assertEqual(permanent.reason, 'extraction-failed')

    def test_timeouts_are_transient(self):
        self.assertIsInstance(from_remote_exception(asyncio.TimeoutError(), reason='x'), TransientRemoteError)

    def test_unknown_errors_are_permanent_with_reason(self):
        error = from_remote_exception(KeyError('audio'), reason='synthesis-failed')
        self.assertIsInstance(error, PermanentUnitError)
        self.assertEqual(error.reason, 'synthesis-failed')


if __name__ == '__main__':
    unittest.main()
