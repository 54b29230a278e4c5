"""
Daily Episode Workflow - LangGraph State Machine

Drives one run per date through the fixed stage order:

    FETCH -> EXTRACT -> SUMMARIZE -> COMPOSE -> SYNTHESIZE -> ASSEMBLE -> PUBLISH -> DONE
                                                                      (any) -> FAILED

Each stage is one graph node. After every node the graph routes on the stage
stored in the run record, so a run loaded from disk re-enters the graph at the
stage it stopped in. Per-item (EXTRACT, SUMMARIZE) and per-segment
(SYNTHESIZE) work fans out under a concurrency cap; every unit's completion is
recorded only after its artifact is on disk, so a restarted run redoes only
unfinished units.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypedDict

from langgraph.graph import StateGraph, END

from config import settings
from synthesis.assembler import SegmentBuffer
from workflow.deps import WorkflowDeps, default_deps
from workflow.errors import (
    REASON_ASSEMBLER_EXHAUSTED,
    REASON_COMPOSE_FAILED,
    REASON_EXTRACTION_FAILED,
    REASON_NO_AUDIO,
    REASON_NO_CONTENT,
    REASON_NO_ELIGIBLE_ITEMS,
    REASON_POLICY_FLAGGED,
    REASON_PUBLISH_EXHAUSTED,
    REASON_SEGMENT_GAPS,
    REASON_SUMMARY_FAILED,
    REASON_SYNTHESIS_FAILED,
    PipelineError,
    TransientRemoteError,
    WholeRunError,
)
from workflow.models import (
    OUTCOME_PARTIAL,
    OUTCOME_PUBLISHED,
    STAGE_ASSEMBLE,
    STAGE_COMPOSE,
    STAGE_DONE,
    STAGE_EXTRACT,
    STAGE_FAILED,
    STAGE_FETCH,
    STAGE_ORDER,
    STAGE_PUBLISH,
    STAGE_SUMMARIZE,
    STAGE_SYNTHESIZE,
    TERMINAL_STAGES,
    UNIT_DONE,
    UNIT_FAILED,
    UNIT_RUNNING,
    Episode,
    Item,
    WorkflowRun,
)
from workflow.retry import RetryPolicy
from workflow.run_state import DateLock, RunStore

logger = logging.getLogger(__name__)

ITEMS_FILE = 'items.json'
SCRIPT_FILE = 'script.json'
EPISODE_SIDECAR = 'episode.json'

ITEM_CONTRIBUTED = 'contributed'
ITEM_REDUCED = 'reduced'
ITEM_DROPPED = 'dropped'


class RunLockedError(RuntimeError):
    """Another process holds the lock for this date."""


class RunGraphState(TypedDict):
    """State for the daily run graph; the run record is the only payload."""
    run: WorkflowRun


class WorkflowOrchestrator:

    def __init__(
        self,
        deps: Optional[WorkflowDeps] = None,
        *,
        runs_dir: str = settings.RUNS_DIR,
        policy: Optional[RetryPolicy] = None,
        item_limit: int = settings.SOURCE_ITEM_LIMIT,
        extract_concurrency: int = settings.EXTRACT_CONCURRENCY,
        synth_concurrency: int = settings.SYNTH_CONCURRENCY,
        stage_max_attempts: int = settings.STAGE_MAX_ATTEMPTS,
        lock_ttl_sec: int = settings.RUN_LOCK_TTL_SEC,
        skip_failed_dates: bool = settings.SKIP_FAILED_DATES,
    ):
        self.deps = deps or default_deps()
        self.runs_dir = runs_dir
        self.policy = policy or RetryPolicy.from_settings(attempt_timeout=settings.ASSEMBLER_TIMEOUT_SEC)
        self.item_limit = item_limit
        self.extract_concurrency = extract_concurrency
        self.synth_concurrency = synth_concurrency
        self.stage_max_attempts = stage_max_attempts
        self.lock_ttl_sec = lock_ttl_sec
        self.skip_failed_dates = skip_failed_dates
        self._active: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, DateLock] = {}
        self.app = self._build_workflow()

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_workflow(self):
        graph = StateGraph(RunGraphState)

        handlers = {
            STAGE_FETCH: self._fetch,
            STAGE_EXTRACT: self._extract,
            STAGE_SUMMARIZE: self._summarize,
            STAGE_COMPOSE: self._compose,
            STAGE_SYNTHESIZE: self._synthesize,
            STAGE_ASSEMBLE: self._assemble,
            STAGE_PUBLISH: self._publish,
        }
        routes = {stage.lower(): stage.lower() for stage in handlers}
        routes[END] = END

        for stage, handler in handlers.items():
            graph.add_node(stage.lower(), self._stage_node(stage, handler))
            graph.add_conditional_edges(stage.lower(), self._route, routes)
        graph.set_conditional_entry_point(self._route, routes)

        return graph.compile()

    @staticmethod
    def _route(state: RunGraphState) -> str:
        stage = state["run"]["stage"]
        if stage in TERMINAL_STAGES:
            return END
        return stage.lower()

    def _stage_node(self, stage: str, handler: Callable[[RunStore, WorkflowRun], Awaitable[None]]):
        async def node(state: RunGraphState) -> RunGraphState:
            run = state["run"]
            store = RunStore(self.runs_dir, run["date"])
            self._touch_lock(run["date"])
            logger.info(f"[orchestrator] ===== {stage} ({run['run_id']}) =====")
            try:
                await handler(store, run)
            except WholeRunError as e:
                logger.error(f"[orchestrator] {stage} failed the run: {e}")
                store.fail(run, e.reason)
            return {"run": run}
        return node

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(
        self,
        date: Optional[str] = None,
        *,
        trigger: str = 'manual',
        force: bool = False,
        retry_stage: Optional[str] = None,
    ) -> WorkflowRun:
        """
        Start a run in the background and return its record immediately.
        A date that already has an active run is not started twice.

        Raises:
            RunLockedError: another process is running this date
        """
        date = date or settings.today_key()
        active = self._active.get(date)
        if active is not None and not active.done():
            logger.info(f"[orchestrator] Run for {date} already active, not starting another")
            return RunStore(self.runs_dir, date).load()

        run, lock = self._prepare(date, trigger, force, retry_stage)
        if lock is None:
            return run

        task = asyncio.create_task(self._execute(run, lock))
        self._active[date] = task
        task.add_done_callback(lambda t: self._on_task_done(date, t))
        return run

    async def run(
        self,
        date: Optional[str] = None,
        *,
        trigger: str = 'manual',
        force: bool = False,
        retry_stage: Optional[str] = None,
    ) -> WorkflowRun:
        """Run (or resume) the workflow for `date` and wait for it to finish."""
        date = date or settings.today_key()
        active = self._active.get(date)
        if active is not None and not active.done():
            logger.info(f"[orchestrator] Run for {date} already active, waiting for it")
            return await asyncio.shield(active)

        run, lock = self._prepare(date, trigger, force, retry_stage)
        if lock is None:
            return run
        return await self._execute(run, lock)

    def is_active(self, date: str) -> bool:
        task = self._active.get(date)
        return task is not None and not task.done()

    def _on_task_done(self, date: str, task: asyncio.Task) -> None:
        if self._active.get(date) is task:
            del self._active[date]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[orchestrator] Run for {date} aborted: {task.exception()!r}")

    def _prepare(self, date: str, trigger: str, force: bool, retry_stage: Optional[str]):
        """
        Take the date lock and decide how the run starts.

        Returns:
            (run, lock); lock is None when there is nothing to do for this date
        """
        lock = DateLock(self.runs_dir, date, self.lock_ttl_sec)
        if not lock.acquire():
            raise RunLockedError(f"Run for {date} is locked by another process")

        store = RunStore(self.runs_dir, date)
        try:
            run = store.load()
            if run is None:
                run = store.create(trigger)
            elif retry_stage:
                store.retry_stage(run, retry_stage.upper())
                self._discard_outputs(store, run, retry_stage.upper())
            elif run['stage'] == STAGE_DONE:
                if not force:
                    logger.info(f"[orchestrator] {date} already done ({run['outcome']}), nothing to do")
                    lock.release()
                    return run, None
                store.archive(run)
                run = store.create(trigger)
            elif run['stage'] == STAGE_FAILED:
                if self.skip_failed_dates and not force:
                    logger.info(f"[orchestrator] {date} failed earlier ({run['reason']}), skipping")
                    lock.release()
                    return run, None
                store.retry_stage(run, run.get('failed_stage', STAGE_FETCH))
            else:
                logger.info(f"[orchestrator] Resuming {run['run_id']} at {run['stage']}")
        except BaseException:
            lock.release()
            raise
        return run, lock

    def _discard_outputs(self, store: RunStore, run: WorkflowRun, stage: str) -> None:
        """Remove whole-run stage outputs from `stage` onwards so those stages run again."""
        position = STAGE_ORDER.index(stage)
        if position <= STAGE_ORDER.index(STAGE_FETCH):
            store.remove(ITEMS_FILE)
            # A new listing may hold different items
            for stage_name in (STAGE_EXTRACT, STAGE_SUMMARIZE):
                run['units'].pop(stage_name, None)
            run['items'] = []
            run['dropped'] = {}
            store.save(run)
        if position <= STAGE_ORDER.index(STAGE_COMPOSE):
            store.remove(SCRIPT_FILE)
            # New script, new segments
            run['units'].pop(STAGE_SYNTHESIZE, None)
            store.save(run)
        if position <= STAGE_ORDER.index(STAGE_ASSEMBLE) and store.exists(EPISODE_SIDECAR):
            store.remove(self._episode_audio_name(store.read_json(EPISODE_SIDECAR)))
            store.remove(EPISODE_SIDECAR)

    def _touch_lock(self, date: str) -> None:
        lock = self._locks.get(date)
        if lock is not None:
            lock.refresh()

    async def _execute(self, run: WorkflowRun, lock: DateLock) -> WorkflowRun:
        self._locks[run["date"]] = lock
        try:
            result = await self.app.ainvoke({"run": run})
        finally:
            self._locks.pop(run["date"], None)
            lock.release()
        run = result["run"]
        logger.info(
            f"[orchestrator] ===== RUN {run['run_id']} FINISHED: {run['stage']} "
            f"(outcome={run.get('outcome')}, reason={run.get('reason')}) ====="
        )
        return run

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        store: RunStore,
        run: WorkflowRun,
        stage: str,
        unit_ids: List[str],
        worker: Callable[[str], Awaitable[None]],
        concurrency: int,
        exhausted_reason: str,
    ) -> None:
        """
        Run `worker` for each pending unit with at most `concurrency` in flight.
        A unit that raises PipelineError is marked failed; siblings keep going.
        Any other error cancels the remaining units and propagates.
        """
        semaphore = asyncio.Semaphore(concurrency)

        async def guarded(unit_id: str) -> None:
            async with semaphore:
                attempts = run['units'][stage][unit_id].get('attempts', 0) + 1
                store.mark_unit(run, stage, unit_id, UNIT_RUNNING, attempts=attempts)
                try:
                    await worker(unit_id)
                except PipelineError as e:
                    reason = exhausted_reason if isinstance(e, TransientRemoteError) else e.reason
                    logger.warning(f"[orchestrator] {stage}/{unit_id} dropped: {reason} ({e})")
                    store.mark_unit(run, stage, unit_id, UNIT_FAILED, reason=reason)
                else:
                    store.mark_unit(run, stage, unit_id, UNIT_DONE)
                self._touch_lock(run['date'])

        tasks = [asyncio.create_task(guarded(unit_id)) for unit_id in unit_ids]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _whole_run_stage(self, store: RunStore, run: WorkflowRun, stage: str, reason: str,
                               fn: Callable[[], Awaitable[Any]]) -> Any:
        """Retry a whole-run stage up to the stage bound, then fail the run with `reason`."""
        while True:
            attempt = store.bump_stage_attempt(run, stage)
            try:
                return await fn()
            except WholeRunError:
                raise
            except PipelineError as e:
                if attempt >= self.stage_max_attempts:
                    raise WholeRunError(f"{stage} exhausted after {attempt} attempts: {e}", reason=reason) from e
                logger.warning(f"[orchestrator] {stage} attempt {attempt}/{self.stage_max_attempts} failed: {e}")

    @staticmethod
    def _done_units(run: WorkflowRun, stage: str) -> List[str]:
        return [uid for uid, entry in run['units'].get(stage, {}).items() if entry['status'] == UNIT_DONE]

    @staticmethod
    def _refresh_dropped(run: WorkflowRun) -> None:
        """Rebuild the per-item dropped map from unit statuses (first failing stage wins)."""
        dropped = {}
        for stage in (STAGE_EXTRACT, STAGE_SUMMARIZE):
            for unit_id, entry in run['units'].get(stage, {}).items():
                if entry['status'] == UNIT_FAILED and unit_id not in dropped:
                    dropped[unit_id] = entry.get('reason') or REASON_EXTRACTION_FAILED
        run['dropped'] = dropped

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _fetch(self, store: RunStore, run: WorkflowRun) -> None:
        if store.exists(ITEMS_FILE):
            items = store.read_json(ITEMS_FILE)
            logger.info(f"[orchestrator] Reusing {len(items)} fetched items")
        else:
            try:
                items = await self.policy.call(
                    lambda: self.deps.source.fetch_ranked_items(self.item_limit),
                    label="fetch listing",
                )
            except WholeRunError:
                raise
            except PipelineError as e:
                raise WholeRunError(f"Source fetch failed: {e}", reason=REASON_NO_CONTENT) from e
            if not items:
                raise WholeRunError("Source returned no items", reason=REASON_NO_CONTENT)
            store.write_json(ITEMS_FILE, items)

        run['items'] = [
            {'id': item['id'], 'title': item['title'], 'url': item.get('url', ''), 'rank': item['rank']}
            for item in items
        ]
        store.advance(run, STAGE_EXTRACT)

    def _items_by_id(self, store: RunStore) -> Dict[str, Item]:
        return {item['id']: item for item in store.read_json(ITEMS_FILE)}

    async def _extract(self, store: RunStore, run: WorkflowRun) -> None:
        items = self._items_by_id(store)
        store.init_units(run, STAGE_EXTRACT, items.keys())
        store.revalidate_units(run, STAGE_EXTRACT, lambda uid: store.exists(f"extract/{uid}.json"))
        pending = store.pending_units(run, STAGE_EXTRACT)
        logger.info(f"[orchestrator] Extracting {len(pending)}/{len(items)} items")

        async def worker(item_id: str) -> None:
            extraction = await self.deps.extractor.extract(items[item_id])
            store.write_json(f"extract/{item_id}.json", extraction)

        await self._fan_out(store, run, STAGE_EXTRACT, pending, worker,
                            self.extract_concurrency, REASON_EXTRACTION_FAILED)
        self._refresh_dropped(run)

        if not self._done_units(run, STAGE_EXTRACT):
            raise WholeRunError("No item could be extracted", reason=REASON_NO_CONTENT)
        store.advance(run, STAGE_SUMMARIZE)

    async def _summarize(self, store: RunStore, run: WorkflowRun) -> None:
        items = self._items_by_id(store)
        extracted = self._done_units(run, STAGE_EXTRACT)
        store.init_units(run, STAGE_SUMMARIZE, extracted)
        store.revalidate_units(run, STAGE_SUMMARIZE, lambda uid: store.exists(f"summaries/{uid}.json"))
        pending = store.pending_units(run, STAGE_SUMMARIZE)
        logger.info(f"[orchestrator] Summarizing {len(pending)}/{len(extracted)} items")

        async def worker(item_id: str) -> None:
            extraction = store.read_json(f"extract/{item_id}.json")
            summary = await self.deps.summarizer.summarize(items[item_id], extraction)
            store.write_json(f"summaries/{item_id}.json", summary)

        await self._fan_out(store, run, STAGE_SUMMARIZE, pending, worker,
                            self.extract_concurrency, REASON_SUMMARY_FAILED)
        self._refresh_dropped(run)

        eligible = [
            uid for uid in self._done_units(run, STAGE_SUMMARIZE)
            if not store.read_json(f"summaries/{uid}.json").get('policy_flags')
        ]
        if not eligible:
            raise WholeRunError("No eligible items after policy filtering", reason=REASON_NO_ELIGIBLE_ITEMS)
        store.advance(run, STAGE_COMPOSE)

    def _composition_entries(self, store: RunStore, run: WorkflowRun) -> List[Dict[str, Any]]:
        """Rank-ordered (item, summary) pairs; flagged summaries become title-only entries."""
        items = self._items_by_id(store)
        summarized = set(self._done_units(run, STAGE_SUMMARIZE))
        entries = []
        for row in sorted(run['items'], key=lambda r: r['rank']):
            if row['id'] not in summarized:
                continue
            summary = store.read_json(f"summaries/{row['id']}.json")
            entries.append({'item': items[row['id']], 'summary': None if summary.get('policy_flags') else summary})
        return entries

    async def _compose(self, store: RunStore, run: WorkflowRun) -> None:
        if not store.exists(SCRIPT_FILE):
            entries = self._composition_entries(store, run)
            script = await self._whole_run_stage(
                store, run, STAGE_COMPOSE, REASON_COMPOSE_FAILED,
                lambda: self.deps.composer.compose(run['date'], entries),
            )
            store.write_json(SCRIPT_FILE, script)
        store.advance(run, STAGE_SYNTHESIZE)

    def _segment_audio_name(self, index: str, sidecar: Dict[str, Any]) -> str:
        return f"audio/{index}.{sidecar['format']}"

    def _has_segment_audio(self, store: RunStore, index: str) -> bool:
        sidecar_name = f"audio/{index}.json"
        if not store.exists(sidecar_name):
            return False
        return store.exists(self._segment_audio_name(index, store.read_json(sidecar_name)))

    async def _synthesize(self, store: RunStore, run: WorkflowRun) -> None:
        segments = {str(s['index']): s for s in store.read_json(SCRIPT_FILE)['segments']}
        store.init_units(run, STAGE_SYNTHESIZE, segments.keys())
        store.revalidate_units(run, STAGE_SYNTHESIZE, lambda uid: self._has_segment_audio(store, uid))
        pending = store.pending_units(run, STAGE_SYNTHESIZE)
        logger.info(f"[orchestrator] Synthesizing {len(pending)}/{len(segments)} segments")

        async def worker(index: str) -> None:
            result = await self.deps.synthesizer.synthesize_segment(segments[index])
            sidecar = {
                'index': int(index),
                'format': result.format,
                'duration_sec': result.duration_sec,
                'backend': result.backend,
                'voice': result.voice,
            }
            store.write_bytes(self._segment_audio_name(index, sidecar), result.audio)
            store.write_json(f"audio/{index}.json", sidecar)

        await self._fan_out(store, run, STAGE_SYNTHESIZE, pending, worker,
                            self.synth_concurrency, REASON_SYNTHESIS_FAILED)

        if not self._done_units(run, STAGE_SYNTHESIZE):
            raise WholeRunError("No segment could be synthesized", reason=REASON_NO_AUDIO)
        store.advance(run, STAGE_ASSEMBLE)

    def _episode_audio_name(self, sidecar: Dict[str, Any]) -> str:
        return f"episode.{sidecar['format']}"

    async def _assemble(self, store: RunStore, run: WorkflowRun) -> None:
        if store.exists(EPISODE_SIDECAR) and store.exists(self._episode_audio_name(store.read_json(EPISODE_SIDECAR))):
            logger.info("[orchestrator] Reusing assembled track")
            store.advance(run, STAGE_PUBLISH)
            return

        buffers = []
        for index in sorted(self._done_units(run, STAGE_SYNTHESIZE), key=int):
            sidecar = store.read_json(f"audio/{index}.json")
            buffers.append(SegmentBuffer(
                index=int(index),
                audio=store.read_bytes(self._segment_audio_name(index, sidecar)),
                format=sidecar['format'],
            ))

        assembled = await self._whole_run_stage(
            store, run, STAGE_ASSEMBLE, REASON_ASSEMBLER_EXHAUSTED,
            lambda: self.policy.call(lambda: self.deps.assembler.assemble(buffers), label="assemble"),
        )
        sidecar = {
            'format': self.deps.assembler.audio_format,
            'duration_sec': assembled.duration_sec,
            'segment_count': assembled.segment_count,
            'segment_indices': [b.index for b in buffers],
        }
        store.write_bytes(self._episode_audio_name(sidecar), assembled.audio)
        store.write_json(EPISODE_SIDECAR, sidecar)
        store.advance(run, STAGE_PUBLISH)

    def _build_episode(self, store: RunStore, run: WorkflowRun, assembled: Dict[str, Any]) -> Episode:
        script = store.read_json(SCRIPT_FILE)
        synthesized = set(self._done_units(run, STAGE_SYNTHESIZE))

        segments = []
        for segment in script['segments']:
            index = str(segment['index'])
            entry = dict(segment)
            if index in synthesized:
                sidecar = store.read_json(f"audio/{index}.json")
                entry['audio'] = self._segment_audio_name(index, sidecar)
                entry['duration_sec'] = sidecar['duration_sec']
            segments.append(entry)

        summarized = set(self._done_units(run, STAGE_SUMMARIZE))
        coverage = []
        for row in sorted(run['items'], key=lambda r: r['rank']):
            entry = dict(row)
            if row['id'] in run['dropped']:
                entry.update(status=ITEM_DROPPED, reason=run['dropped'][row['id']])
            elif row['id'] in summarized and store.read_json(f"summaries/{row['id']}.json").get('policy_flags'):
                entry.update(status=ITEM_REDUCED, reason=REASON_POLICY_FLAGGED)
            else:
                entry.update(status=ITEM_CONTRIBUTED, reason=None)
            coverage.append(entry)

        gaps = [s['index'] for s in segments if s.get('audio') is None]
        outcome = OUTCOME_PARTIAL if run['dropped'] or gaps else OUTCOME_PUBLISHED
        return {
            'date': run['date'],
            'title': script['title'],
            'description': script['description'],
            'long_form': script.get('long_form') or '',
            'segments': segments,
            'items': coverage,
            'duration_sec': assembled['duration_sec'],
            'outcome': outcome,
        }

    async def _publish(self, store: RunStore, run: WorkflowRun) -> None:
        assembled = store.read_json(EPISODE_SIDECAR)
        audio = store.read_bytes(self._episode_audio_name(assembled))
        episode = self._build_episode(store, run, assembled)

        await self._whole_run_stage(
            store, run, STAGE_PUBLISH, REASON_PUBLISH_EXHAUSTED,
            lambda: self.deps.store.publish(episode, audio),
        )

        reasons = sorted(set(run['dropped'].values()))
        gaps = [s['index'] for s in episode['segments'] if s.get('audio') is None]
        if gaps:
            reasons.append(REASON_SEGMENT_GAPS)
        store.finish(run, episode['outcome'], ','.join(reasons) or None)
        logger.info(
            f"[orchestrator] Published {run['date']}: {len(episode['segments'])} segments "
            f"({len(gaps)} gaps), {len(run['dropped'])} items dropped"
        )


def stage_names() -> List[str]:
    """Stages a run can be explicitly retried from."""
    return [stage for stage in STAGE_ORDER if stage != STAGE_DONE]
