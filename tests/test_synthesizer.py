import unittest

from _support import FAST_POLICY, FakeTTSBackend

from synthesis.synthesizer import Synthesizer
from synthesis.tts_backends import build_backends
from workflow.errors import PermanentUnitError, TransientRemoteError


def _segment(index=0, speaker='A', text='Hello there.'):
    return {'index': index, 'speaker': speaker, 'text': text, 'item_ids': []}


class SynthesizerTest(unittest.IsolatedAsyncioTestCase):

    async def test_voice_follows_speaker(self):
        primary = FakeTTSBackend('primary')
        synthesizer = Synthesizer([primary], FAST_POLICY)
        a = await synthesizer.synthesize_segment(_segment(speaker='A'))
        b = await synthesizer.synthesize_segment(_segment(speaker='B'))
        self.assertEqual((a.voice, b.voice), ('primary-a', 'primary-b'))

    async def test_primary_failure_falls_back_to_secondary(self):
        primary = FakeTTSBackend('primary', default=TransientRemoteError('503'))
        secondary = FakeTTSBackend('secondary')
        result = await Synthesizer([primary, secondary], FAST_POLICY).synthesize_segment(_segment())
        self.assertEqual(result.backend, 'secondary')
        self.assertEqual(len(primary.calls), FAST_POLICY.max_attempts)
        self.assertEqual(len(secondary.calls), 1)

    async def test_permanent_primary_error_skips_straight_to_secondary(self):
        primary = FakeTTSBackend('primary', default=PermanentUnitError('bad voice', reason='synthesis-failed'))
        secondary = FakeTTSBackend('secondary')
        result = await Synthesizer([primary, secondary], FAST_POLICY).synthesize_segment(_segment())
        self.assertEqual(result.backend, 'secondary')
        self.assertEqual(len(primary.calls), 1)

    async def test_both_backends_failing_drops_segment(self):
        primary = FakeTTSBackend('primary', default=TransientRemoteError('503'))
        secondary = FakeTTSBackend('secondary', default=TransientRemoteError('503'))
        with self.assertRaises(PermanentUnitError) as ctx:
            await Synthesizer([primary, secondary], FAST_POLICY).synthesize_segment(_segment(index=4))
        self.assertEqual(ctx.exception.reason, 'synthesis-failed')

    async def test_timeouts_then_success_stay_on_primary(self):
        primary = FakeTTSBackend('primary', script={'Hello there.': ['slow', 'slow', 'ok']})
        secondary = FakeTTSBackend('secondary')
        synthesizer = Synthesizer([primary, secondary], FAST_POLICY.with_timeout(0.05))
        result = await synthesizer.synthesize_segment(_segment())
        self.assertEqual(result.backend, 'primary')
        self.assertEqual(len(primary.calls), 3)
        self.assertEqual(secondary.calls, [])

    def test_requires_a_backend(self):
        with self.assertRaises(ValueError):
            Synthesizer([], FAST_POLICY)

    def test_build_backends_skips_openai_without_client(self):
        backends = build_backends(['openai', 'edge', 'nope'])
        self.assertEqual([b.name for b in backends], ['edge'])


if __name__ == '__main__':
    unittest.main()
