import os
import tempfile
import time
import unittest

import _support  # noqa: F401

from workflow.models import (
    STAGE_COMPOSE,
    STAGE_DONE,
    STAGE_EXTRACT,
    STAGE_FAILED,
    STAGE_FETCH,
    STAGE_SUMMARIZE,
    STAGE_SYNTHESIZE,
    UNIT_DONE,
    UNIT_FAILED,
    UNIT_PENDING,
    UNIT_RUNNING,
)
from workflow.run_state import DateLock, RunStore, StageOrderError


class RunStoreTest(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.store = RunStore(self._tmp.name, '2024-05-01')
        self.run = self.store.create('test')

    def tearDown(self):
        self._tmp.cleanup()

    def test_create_persists_record(self):
        loaded = self.store.load()
        self.assertEqual(loaded['run_id'], self.run['run_id'])
        self.assertEqual(loaded['stage'], STAGE_FETCH)
        self.assertEqual(loaded['status'], 'active')

    def test_advance_moves_forward_and_is_idempotent(self):
        self.store.advance(self.run, STAGE_EXTRACT)
        self.store.advance(self.run, STAGE_EXTRACT)
        self.assertEqual(self.store.load()['stage'], STAGE_EXTRACT)
        self.assertEqual([h['stage'] for h in self.run['stage_history']], [STAGE_FETCH, STAGE_EXTRACT])

    def test_advance_never_regresses(self):
        self.store.advance(self.run, STAGE_COMPOSE)
        with self.assertRaises(StageOrderError):
            self.store.advance(self.run, STAGE_EXTRACT)

    def test_terminal_run_cannot_advance(self):
        self.store.fail(self.run, 'no-content')
        self.assertEqual(self.run['stage'], STAGE_FAILED)
        self.assertEqual(self.run['failed_stage'], STAGE_FETCH)
        self.assertEqual(self.store.load()['outcome'], 'failed')
        with self.assertRaises(StageOrderError):
            self.store.advance(self.run, STAGE_EXTRACT)

    def test_finish_records_outcome(self):
        self.store.finish(self.run, 'published')
        loaded = self.store.load()
        self.assertEqual(loaded['stage'], STAGE_DONE)
        self.assertEqual(loaded['status'], 'done')
        self.assertEqual(loaded['outcome'], 'published')

    def test_retry_stage_resets_unfinished_units_only(self):
        self.store.advance(self.run, STAGE_SYNTHESIZE)
        self.store.init_units(self.run, STAGE_SUMMARIZE, ['a'])
        self.store.mark_unit(self.run, STAGE_SUMMARIZE, 'a', UNIT_DONE)
        self.store.init_units(self.run, STAGE_SYNTHESIZE, ['0', '1'])
        self.store.mark_unit(self.run, STAGE_SYNTHESIZE, '0', UNIT_DONE)
        self.store.mark_unit(self.run, STAGE_SYNTHESIZE, '1', UNIT_FAILED, reason='synthesis-failed')
        self.store.bump_stage_attempt(self.run, STAGE_SYNTHESIZE)
        self.store.fail(self.run, 'no-audio')

        self.store.retry_stage(self.run, STAGE_SYNTHESIZE)

        self.assertEqual(self.run['stage'], STAGE_SYNTHESIZE)
        self.assertEqual(self.run['status'], 'active')
        self.assertIsNone(self.run['reason'])
        self.assertIsNone(self.run['outcome'])
        self.assertNotIn('failed_stage', self.run)
        self.assertEqual(self.run['units'][STAGE_SYNTHESIZE]['0']['status'], UNIT_DONE)
        self.assertEqual(self.run['units'][STAGE_SYNTHESIZE]['1']['status'], UNIT_PENDING)
        self.assertEqual(self.run['units'][STAGE_SUMMARIZE]['a']['status'], UNIT_DONE)
        self.assertEqual(self.run['stage_attempts'], {})

    def test_retry_stage_rejects_done(self):
        with self.assertRaises(StageOrderError):
            self.store.retry_stage(self.run, STAGE_DONE)

    def test_revalidate_resets_unconfirmed_units(self):
        self.store.init_units(self.run, STAGE_EXTRACT, ['a', 'b', 'c', 'd'])
        self.store.mark_unit(self.run, STAGE_EXTRACT, 'a', UNIT_DONE)
        self.store.write_json('extract/a.json', {'ok': True})
        self.store.mark_unit(self.run, STAGE_EXTRACT, 'b', UNIT_DONE)  # artifact never written
        self.store.mark_unit(self.run, STAGE_EXTRACT, 'c', UNIT_RUNNING)
        self.store.mark_unit(self.run, STAGE_EXTRACT, 'd', UNIT_FAILED, reason='extraction-failed')

        reset = self.store.revalidate_units(self.run, STAGE_EXTRACT, lambda uid: self.store.exists(f"extract/{uid}.json"))

        self.assertEqual(reset, 2)
        self.assertEqual(RunStore.pending_units(self.run, STAGE_EXTRACT), ['b', 'c'])
        self.assertEqual(self.run['units'][STAGE_EXTRACT]['d']['status'], UNIT_FAILED)

    def test_artifact_writes_leave_no_temp_files(self):
        self.store.write_bytes('audio/0.mp3', b'abc')
        self.assertEqual(self.store.read_bytes('audio/0.mp3'), b'abc')
        self.assertEqual(sorted(os.listdir(self.store.path('audio'))), ['0.mp3'])

    def test_archive_moves_run_aside(self):
        self.store.finish(self.run, 'published')
        archived = self.store.archive(self.run)
        self.assertTrue(os.path.isdir(archived))
        self.assertIsNone(self.store.load())


class DateLockTest(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self._tmp.cleanup()

    def test_second_holder_is_refused(self):
        first = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        second = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        self.assertTrue(first.acquire())
        self.assertFalse(second.acquire())
        first.release()
        self.assertTrue(second.acquire())
        second.release()

    def test_other_dates_are_independent(self):
        a = DateLock(self._tmp.name, '2024-05-01')
        b = DateLock(self._tmp.name, '2024-05-02')
        self.assertTrue(a.acquire())
        self.assertTrue(b.acquire())
        a.release()
        b.release()

    def test_stale_lock_is_taken_over(self):
        stale = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        self.assertTrue(stale.acquire())
        old = time.time() - 120
        os.utime(stale.path, (old, old))

        fresh = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        self.assertTrue(fresh.acquire())
        fresh.release()

    def test_refresh_keeps_a_long_run_from_looking_stale(self):
        holder = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        self.assertTrue(holder.acquire())
        old = time.time() - 120
        os.utime(holder.path, (old, old))

        holder.refresh()

        contender = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        self.assertFalse(contender.acquire())
        holder.release()

    def test_refresh_without_holding_leaves_file_alone(self):
        holder = DateLock(self._tmp.name, '2024-05-01', ttl_sec=60)
        self.assertTrue(holder.acquire())
        old = time.time() - 120
        os.utime(holder.path, (old, old))

        DateLock(self._tmp.name, '2024-05-01', ttl_sec=60).refresh()

        self.assertLess(os.path.getmtime(holder.path), time.time() - 100)
        holder.release()


if __name__ == '__main__':
    unittest.main()
