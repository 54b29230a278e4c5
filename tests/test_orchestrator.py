import os
import tempfile
import time
import unittest

from _support import (
    FAST_POLICY,
    Crash,
    FakeAssembler,
    FakeComposer,
    FakeExtractor,
    FakeSource,
    FakeSummarizer,
    FakeSynthesizer,
    FakeTTSBackend,
    MemoryMetadataStore,
    MemoryObjectStore,
    make_items,
)

from storage.episode_store import EpisodeStore
from synthesis.synthesizer import Synthesizer
from workflow.deps import default_deps
from workflow.errors import PermanentUnitError, TransientRemoteError
from workflow.models import (
    OUTCOME_FAILED,
    OUTCOME_PARTIAL,
    OUTCOME_PUBLISHED,
    STAGE_DONE,
    STAGE_EXTRACT,
    STAGE_FAILED,
    STAGE_SYNTHESIZE,
    UNIT_DONE,
)
from workflow.orchestrator import RunLockedError, WorkflowOrchestrator
from workflow.run_state import DateLock, RunStore

DATE = '2024-05-01'


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.runs_dir = self._tmp.name
        self.source = FakeSource(make_items(3))
        self.extractor = FakeExtractor()
        self.summarizer = FakeSummarizer()
        self.composer = FakeComposer()
        self.synthesizer = FakeSynthesizer()
        self.assembler = FakeAssembler()
        self.objects = MemoryObjectStore()
        self.metadata = MemoryMetadataStore()

    def tearDown(self):
        self._tmp.cleanup()

    def orchestrator(self, **kwargs):
        deps = default_deps(
            source=self.source,
            extractor=self.extractor,
            summarizer=self.summarizer,
            composer=self.composer,
            synthesizer=self.synthesizer,
            assembler=self.assembler,
            store=EpisodeStore(self.objects, self.metadata, FAST_POLICY),
        )
        options = dict(runs_dir=self.runs_dir, policy=FAST_POLICY, extract_concurrency=2,
                       synth_concurrency=1, stage_max_attempts=2, lock_ttl_sec=60, skip_failed_dates=False)
        options.update(kwargs)
        return WorkflowOrchestrator(deps, **options)

    def published(self):
        return self.metadata.records.get(DATE)


class HappyPathTest(OrchestratorTestCase):

    async def test_all_items_published(self):
        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(run['outcome'], OUTCOME_PUBLISHED)
        self.assertIsNone(run['reason'])
        episode = self.published()
        self.assertEqual(episode['outcome'], OUTCOME_PUBLISHED)
        self.assertEqual([s['index'] for s in episode['segments']], list(range(6)))
        self.assertEqual([i['status'] for i in episode['items']], ['contributed'] * 3)
        self.assertEqual(self.assembler.calls, [list(range(6))])
        self.assertEqual(self.objects.put_calls, [f"{DATE}.mp3"])

    async def test_rerunning_completed_date_is_noop(self):
        orchestrator = self.orchestrator()
        await orchestrator.run(DATE)
        before = self.published()

        run = await orchestrator.run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(self.source.calls, 1)
        self.assertEqual(len(self.assembler.calls), 1)
        self.assertEqual(len(self.objects.put_calls), 1)
        self.assertEqual(len(self.metadata.put_calls), 1)
        self.assertEqual(self.published(), before)

    async def test_force_starts_a_fresh_run(self):
        orchestrator = self.orchestrator()
        first = await orchestrator.run(DATE)
        second = await orchestrator.run(DATE, force=True)
        self.assertNotEqual(first['run_id'], second['run_id'])
        self.assertEqual(self.source.calls, 2)
        # Same audio and content, so the store skips both writes
        self.assertEqual(len(self.objects.put_calls), 1)


class ItemFailureTest(OrchestratorTestCase):

    async def test_extraction_failure_drops_only_that_item(self):
        self.extractor.failures = {'102': PermanentUnitError('HTTP 404', reason='extraction-failed')}

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(run['outcome'], OUTCOME_PARTIAL)
        self.assertEqual(run['dropped'], {'102': 'extraction-failed'})
        episode = self.published()
        items = {i['id']: i for i in episode['items']}
        self.assertEqual(items['102']['status'], 'dropped')
        self.assertEqual(items['102']['reason'], 'extraction-failed')
        self.assertEqual([i['status'] for i in episode['items'] if i['id'] != '102'], ['contributed'] * 2)
        self.assertEqual([s['index'] for s in episode['segments']], [0, 1, 2, 3])
        self.assertEqual(len(self.assembler.calls), 1)
        self.assertNotIn('102', self.summarizer.calls)

    async def test_exhausted_transient_error_is_recorded_as_extraction_failed(self):
        self.extractor.failures = {'101': TransientRemoteError('timeout')}
        run = await self.orchestrator().run(DATE)
        self.assertEqual(run['dropped'], {'101': 'extraction-failed'})

    async def test_summary_failure_is_recorded(self):
        class FailingSummarizer(FakeSummarizer):
            async def summarize(self, item, extraction):
                if item['id'] == '103':
                    raise PermanentUnitError('malformed twice', reason='summary-invalid')
                return await super().summarize(item, extraction)

        self.summarizer = FailingSummarizer()
        run = await self.orchestrator().run(DATE)
        self.assertEqual(run['dropped'], {'103': 'summary-invalid'})

    async def test_policy_flagged_item_is_kept_at_reduced_detail(self):
        self.summarizer.flagged = {'102'}

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['outcome'], OUTCOME_PUBLISHED)
        entries = self.composer.calls[0]
        self.assertEqual([e['item']['id'] for e in entries], ['101', '102', '103'])
        self.assertIsNone(entries[1]['summary'])
        items = {i['id']: i for i in self.published()['items']}
        self.assertEqual((items['102']['status'], items['102']['reason']), ('reduced', 'policy-flagged'))

    async def test_zero_eligible_items_fails_without_store_writes(self):
        self.summarizer.flagged = {'101', '102', '103'}

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_FAILED)
        self.assertEqual(run['outcome'], OUTCOME_FAILED)
        self.assertEqual(run['reason'], 'no-eligible-items')
        self.assertEqual(self.composer.calls, [])
        self.assertEqual(self.objects.put_calls, [])
        self.assertEqual(self.metadata.put_calls, [])

    async def test_empty_fetch_fails_with_no_content(self):
        self.source.items = []
        run = await self.orchestrator().run(DATE)
        self.assertEqual((run['stage'], run['reason']), (STAGE_FAILED, 'no-content'))
        self.assertEqual(RunStore(self.runs_dir, DATE).load()['outcome'], OUTCOME_FAILED)
        self.assertEqual(self.extractor.calls, [])


class SynthesisTest(OrchestratorTestCase):

    async def test_gap_does_not_shift_later_indices(self):
        self.synthesizer.fail_indices = {1}

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['outcome'], OUTCOME_PARTIAL)
        self.assertIn('segment-gaps', run['reason'])
        self.assertEqual(self.assembler.calls, [[0, 2, 3, 4, 5]])
        segments = self.published()['segments']
        self.assertEqual([s['index'] for s in segments], list(range(6)))
        self.assertIsNone(segments[1]['audio'])
        self.assertEqual(segments[2]['audio'], 'audio/2.mp3')

    async def test_no_audio_at_all_fails_the_run(self):
        self.synthesizer.fail_indices = set(range(6))
        run = await self.orchestrator().run(DATE)
        self.assertEqual((run['stage'], run['reason']), (STAGE_FAILED, 'no-audio'))
        self.assertEqual(self.assembler.calls, [])

    async def test_crash_mid_synthesis_resumes_unfinished_segments_only(self):
        self.synthesizer.crash_indices = {3}

        with self.assertRaises(Crash):
            await self.orchestrator().run(DATE)

        record = RunStore(self.runs_dir, DATE).load()
        self.assertEqual(record['stage'], STAGE_SYNTHESIZE)
        finished = {int(uid) for uid, entry in record['units'][STAGE_SYNTHESIZE].items()
                    if entry['status'] == UNIT_DONE}
        self.assertTrue({0, 1, 2} <= finished)
        self.assertNotIn(3, finished)
        self.synthesizer.calls.clear()

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(sorted(self.synthesizer.calls), sorted(set(range(6)) - finished))
        self.assertIn(3, self.synthesizer.calls)
        self.assertEqual(self.source.calls, 1)
        self.assertEqual(len(self.composer.calls), 1)
        self.assertEqual(self.assembler.calls, [list(range(6))])

    async def test_timeouts_then_success_keeps_segment_in_place(self):
        segment_text = 'Noted on Story 1.'
        backend = FakeTTSBackend('primary', script={segment_text: ['slow', 'slow', 'ok']})
        self.synthesizer = Synthesizer([backend], FAST_POLICY.with_timeout(0.05))

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['outcome'], OUTCOME_PUBLISHED)
        self.assertEqual(backend.calls.count(segment_text), 3)
        self.assertEqual(self.assembler.calls, [list(range(6))])
        self.assertEqual(self.published()['segments'][1]['audio'], 'audio/1.mp3')

    async def test_missing_audio_file_is_resynthesized(self):
        self.synthesizer.crash_indices = {5}
        with self.assertRaises(Crash):
            await self.orchestrator().run(DATE)
        store = RunStore(self.runs_dir, DATE)
        self.assertEqual(store.load()['units'][STAGE_SYNTHESIZE]['0']['status'], UNIT_DONE)
        store.remove('audio/0.mp3')
        self.synthesizer.calls.clear()

        await self.orchestrator().run(DATE)

        self.assertEqual(sorted(self.synthesizer.calls), [0, 5])


class WholeRunStageTest(OrchestratorTestCase):

    async def test_assembler_retried_as_one_operation(self):
        self.assembler.failures = 4  # first stage attempt exhausts its 3 tries, second succeeds

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(len(self.assembler.calls), 5)
        self.assertEqual(run['stage_attempts']['ASSEMBLE'], 2)

    async def test_assembler_exhaustion_fails_the_run(self):
        self.assembler.failures = 99
        run = await self.orchestrator().run(DATE)
        self.assertEqual((run['stage'], run['reason']), (STAGE_FAILED, 'assembler-exhausted'))
        self.assertEqual(run['outcome'], OUTCOME_FAILED)
        self.assertEqual(self.objects.put_calls, [])

    async def test_publish_exhaustion_fails_the_run(self):
        self.objects.fail_puts = 99
        run = await self.orchestrator().run(DATE)
        self.assertEqual((run['stage'], run['reason']), (STAGE_FAILED, 'publish-exhausted'))
        self.assertEqual(run['outcome'], OUTCOME_FAILED)
        # Two stage attempts, each with its own round of store retries
        self.assertEqual(run['stage_attempts']['PUBLISH'], 2)
        self.assertEqual(len(self.objects.put_calls), 2 * FAST_POLICY.max_attempts)
        self.assertIsNone(self.published())

    async def test_publish_retried_as_one_operation(self):
        self.metadata.fail_puts = FAST_POLICY.max_attempts  # first stage attempt exhausts its tries

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(run['outcome'], OUTCOME_PUBLISHED)
        self.assertEqual(run['stage_attempts']['PUBLISH'], 2)
        self.assertEqual(self.objects.put_calls, [f"{DATE}.mp3"])
        self.assertEqual(len(self.metadata.put_calls), FAST_POLICY.max_attempts + 1)
        self.assertIsNotNone(self.published())

    async def test_failed_date_is_retried_from_failed_stage(self):
        self.assembler.failures = 99
        await self.orchestrator().run(DATE)
        self.assembler.failures = 0
        synth_calls = len(self.synthesizer.calls)

        run = await self.orchestrator().run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(len(self.synthesizer.calls), synth_calls)

    async def test_failed_date_can_be_skipped(self):
        self.source.items = []
        await self.orchestrator().run(DATE)
        self.source.items = make_items(3)

        run = await self.orchestrator(skip_failed_dates=True).run(DATE)

        self.assertEqual(run['stage'], STAGE_FAILED)
        self.assertEqual(self.source.calls, 1)


class TriggerTest(OrchestratorTestCase):

    async def test_same_date_is_single_flight(self):
        orchestrator = self.orchestrator()
        first = orchestrator.trigger(DATE)
        second = orchestrator.trigger(DATE)
        self.assertEqual(first['run_id'], second['run_id'])
        self.assertTrue(orchestrator.is_active(DATE))

        run = await orchestrator.run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(self.source.calls, 1)

    async def test_lock_held_elsewhere_is_refused(self):
        lock = DateLock(self.runs_dir, DATE, ttl_sec=60)
        self.assertTrue(lock.acquire())
        try:
            with self.assertRaises(RunLockedError):
                await self.orchestrator().run(DATE)
        finally:
            lock.release()

    async def test_explicit_stage_retry_redoes_failed_segments(self):
        self.synthesizer.fail_indices = {2}
        await self.orchestrator().run(DATE)
        self.synthesizer.fail_indices = set()
        self.synthesizer.calls.clear()

        run = await self.orchestrator().run(DATE, retry_stage='synthesize')

        self.assertEqual(self.synthesizer.calls, [2])
        self.assertEqual(run['outcome'], OUTCOME_PUBLISHED)
        self.assertEqual(self.assembler.calls[-1], list(range(6)))
        self.assertEqual(run['units'][STAGE_SYNTHESIZE]['2']['status'], UNIT_DONE)
        self.assertEqual(self.published()['outcome'], OUTCOME_PUBLISHED)

    async def test_fetch_retry_with_a_new_listing_forgets_old_items(self):
        self.extractor.failures = {'102': PermanentUnitError('HTTP 404', reason='extraction-failed')}
        await self.orchestrator().run(DATE)
        self.extractor.failures = {}
        self.extractor.calls.clear()
        self.source.items = [dict(item, id=str(int(item['id']) + 100)) for item in make_items(3)]

        run = await self.orchestrator().run(DATE, retry_stage='fetch')

        self.assertEqual(run['stage'], STAGE_DONE)
        self.assertEqual(run['outcome'], OUTCOME_PUBLISHED)
        self.assertEqual(run['dropped'], {})
        self.assertEqual(sorted(self.extractor.calls), ['201', '202', '203'])
        self.assertEqual(sorted(run['units'][STAGE_EXTRACT]), ['201', '202', '203'])
        self.assertEqual([i['id'] for i in run['items']], ['201', '202', '203'])
        self.assertEqual([i['id'] for i in self.published()['items']], ['201', '202', '203'])

    async def test_lock_is_kept_fresh_while_stages_run(self):
        lock_path = DateLock(self.runs_dir, DATE).path
        seen = []

        class AgingExtractor(FakeExtractor):
            async def extract(self, item):
                if not seen:
                    old = time.time() - 120
                    os.utime(lock_path, (old, old))
                seen.append(os.path.getmtime(lock_path))
                return await super().extract(item)

        self.extractor = AgingExtractor()
        run = await self.orchestrator(extract_concurrency=1).run(DATE)

        self.assertEqual(run['stage'], STAGE_DONE)
        # Finishing the first item refreshed the lock before the second started
        self.assertGreater(seen[1], time.time() - 60)


if __name__ == '__main__':
    unittest.main()
