"""
Durable run record and stage artifacts for one date.

Layout under RUNS_DIR/<date>/:
    run.json                 WorkflowRun record (stage, unit status map, attempts)
    items.json               fetched ranked items
    extract/<item_id>.json   extracted article + discussion text
    summaries/<item_id>.json Summary per item
    script.json              composed script (title, description, segments)
    audio/<index>.<ext>      synthesized segment audio (+ .json sidecar)
    episode.<ext>            assembled track (+ episode.json sidecar)

Every write goes to a temp file first and is moved into place with os.replace,
so a crash never leaves a half-written record or artifact behind.
"""

import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from workflow.models import (
    OUTCOME_FAILED,
    STAGE_FAILED,
    STAGE_FETCH,
    STAGE_ORDER,
    TERMINAL_STAGES,
    UNIT_DONE,
    UNIT_FAILED,
    UNIT_PENDING,
    UNIT_RUNNING,
    WorkflowRun,
)

logger = logging.getLogger(__name__)

RUN_FILE = 'run.json'


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StageOrderError(RuntimeError):
    """Raised when a transition would move a run backwards without an explicit stage retry."""


class RunStore:
    """
    Owns the run record and artifacts for a single date key.

    The record is the only mutable state shared by fan-out workers; each
    worker touches only its own unit entry via mark_unit().
    """

    def __init__(self, base_dir: str, date: str):
        self.date = date
        self.run_dir = os.path.join(base_dir, date)

    # ------------------------------------------------------------------
    # Record
    # ------------------------------------------------------------------

    def load(self) -> Optional[WorkflowRun]:
        path = os.path.join(self.run_dir, RUN_FILE)
        if not os.path.exists(path):
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def create(self, trigger: str = 'manual') -> WorkflowRun:
        now = _now()
        run: WorkflowRun = {
            'run_id': f"{self.date}-{uuid.uuid4().hex[:8]}",
            'date': self.date,
            'trigger': trigger,
            'stage': STAGE_FETCH,
            'status': 'active',
            'outcome': None,
            'reason': None,
            'created_at': now,
            'updated_at': now,
            'stage_history': [{'stage': STAGE_FETCH, 'at': now}],
            'stage_attempts': {},
            'units': {},
            'items': [],
            'dropped': {},
        }
        self.save(run)
        logger.info(f"[run_state] Created run {run['run_id']} for {self.date}")
        return run

    def save(self, run: WorkflowRun) -> None:
        run['updated_at'] = _now()
        self.write_json(RUN_FILE, run)

    def archive(self, run: WorkflowRun) -> str:
        """Move a terminal run's directory aside so a fresh run can start for the date."""
        archived = f"{self.run_dir}.{run['run_id']}"
        os.replace(self.run_dir, archived)
        logger.info(f"[run_state] Archived {run['run_id']} to {archived}")
        return archived

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def advance(self, run: WorkflowRun, stage: str) -> None:
        """Move the run forward to `stage`. Re-entering the current stage is a no-op."""
        current = run['stage']
        if current == stage:
            return
        if current in TERMINAL_STAGES:
            raise StageOrderError(f"Run {run['run_id']} is terminal ({current}); cannot enter {stage}")
        if STAGE_ORDER.index(stage) < STAGE_ORDER.index(current):
            raise StageOrderError(f"Run {run['run_id']} cannot regress from {current} to {stage}")
        run['stage'] = stage
        run['stage_history'].append({'stage': stage, 'at': _now()})
        if stage == STAGE_ORDER[-1]:
            run['status'] = 'done'
        self.save(run)
        logger.info(f"[run_state] {run['run_id']}: {current} -> {stage}")

    def fail(self, run: WorkflowRun, reason: str) -> None:
        failed_at = run['stage']
        run['stage'] = STAGE_FAILED
        run['status'] = 'failed'
        run['outcome'] = OUTCOME_FAILED
        run['reason'] = reason
        run['failed_stage'] = failed_at
        run['stage_history'].append({'stage': STAGE_FAILED, 'at': _now(), 'reason': reason})
        self.save(run)
        logger.error(f"[run_state] {run['run_id']}: FAILED at {failed_at} ({reason})")

    def finish(self, run: WorkflowRun, outcome: str, reason: Optional[str] = None) -> None:
        run['outcome'] = outcome
        run['reason'] = reason
        self.advance(run, STAGE_ORDER[-1])

    def retry_stage(self, run: WorkflowRun, stage: str) -> None:
        """
        Explicitly move a run back to `stage` (the only allowed regression).

        Failed units of that stage and every later stage go back to pending;
        finished units are kept so only unfinished work is redone.
        """
        if stage not in STAGE_ORDER or stage == STAGE_ORDER[-1]:
            raise StageOrderError(f"Cannot retry stage {stage}")
        position = STAGE_ORDER.index(stage)
        for unit_stage, units in run['units'].items():
            if STAGE_ORDER.index(unit_stage) < position:
                continue
            for entry in units.values():
                if entry['status'] != UNIT_DONE:
                    entry['status'] = UNIT_PENDING
                    entry['reason'] = None
        for later in STAGE_ORDER[position:]:
            run['stage_attempts'].pop(later, None)
        previous = run['stage']
        run['stage'] = stage
        run['status'] = 'active'
        run['outcome'] = None
        run['reason'] = None
        run.pop('failed_stage', None)
        run['stage_history'].append({'stage': stage, 'at': _now(), 'retry_from': previous})
        self.save(run)
        logger.info(f"[run_state] {run['run_id']}: stage retry {previous} -> {stage}")

    def bump_stage_attempt(self, run: WorkflowRun, stage: str) -> int:
        attempts = run['stage_attempts'].get(stage, 0) + 1
        run['stage_attempts'][stage] = attempts
        self.save(run)
        return attempts

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    def init_units(self, run: WorkflowRun, stage: str, unit_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Register units for a stage; existing entries are left untouched."""
        units = run['units'].setdefault(stage, {})
        for unit_id in unit_ids:
            units.setdefault(unit_id, {'status': UNIT_PENDING, 'attempts': 0, 'reason': None, 'updated_at': _now()})
        self.save(run)
        return units

    def mark_unit(
        self,
        run: WorkflowRun,
        stage: str,
        unit_id: str,
        status: str,
        *,
        reason: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> None:
        entry = run['units'].setdefault(stage, {}).setdefault(unit_id, {'attempts': 0})
        entry['status'] = status
        entry['reason'] = reason
        if attempts is not None:
            entry['attempts'] = attempts
        entry['updated_at'] = _now()
        self.save(run)

    def revalidate_units(self, run: WorkflowRun, stage: str, has_artifact: Callable[[str], bool]) -> int:
        """
        Reset units whose completion is unconfirmed: anything left running by an
        aborted process, and anything marked done whose artifact is missing.
        Returns the number of units reset.
        """
        reset = 0
        for unit_id, entry in run['units'].get(stage, {}).items():
            if entry['status'] == UNIT_RUNNING or (entry['status'] == UNIT_DONE and not has_artifact(unit_id)):
                logger.info(f"[run_state] {stage}/{unit_id}: unconfirmed ({entry['status']}), resetting to pending")
                entry['status'] = UNIT_PENDING
                reset += 1
        if reset:
            self.save(run)
        return reset

    @staticmethod
    def pending_units(run: WorkflowRun, stage: str) -> list:
        return [uid for uid, entry in run['units'].get(stage, {}).items()
                if entry['status'] not in (UNIT_DONE, UNIT_FAILED)]

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def path(self, name: str) -> str:
        return os.path.join(self.run_dir, name)

    def exists(self, name: str) -> bool:
        return os.path.exists(self.path(name))

    def write_bytes(self, name: str, data: bytes) -> str:
        final_path = self.path(name)
        os.makedirs(os.path.dirname(final_path), exist_ok=True)
        tmp_path = f"{final_path}.tmp"
        with open(tmp_path, 'wb') as f:
            f.write(data)
        os.replace(tmp_path, final_path)
        return final_path

    def remove(self, name: str) -> bool:
        try:
            os.remove(self.path(name))
            return True
        except FileNotFoundError:
            return False

    def read_bytes(self, name: str) -> bytes:
        with open(self.path(name), 'rb') as f:
            return f.read()

    def write_json(self, name: str, obj: Any) -> str:
        return self.write_bytes(name, json.dumps(obj, indent=2, ensure_ascii=False).encode('utf-8'))

    def read_json(self, name: str) -> Any:
        with open(self.path(name), 'r', encoding='utf-8') as f:
            return json.load(f)


class DateLock:
    """
    Exclusive lock file per date key, so only one process runs a date at a time.
    A lock older than `ttl_sec` is treated as left behind by a dead process.
    """

    def __init__(self, base_dir: str, date: str, ttl_sec: int = 3600):
        self.path = os.path.join(base_dir, f"{date}.lock")
        self.ttl_sec = ttl_sec
        self.held = False

    def acquire(self) -> bool:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            age = time.time() - os.path.getmtime(self.path)
            if age < self.ttl_sec:
                return False
            logger.warning(f"[run_state] Removing stale lock {self.path} ({age:.0f}s old)")
            os.remove(self.path)
            return self.acquire()
        with os.fdopen(fd, 'w') as f:
            f.write(f"{os.getpid()} {_now()}\n")
        self.held = True
        return True

    def refresh(self) -> None:
        """Mark the lock as still in use so a long run is not mistaken for a dead one."""
        if not self.held:
            return
        try:
            os.utime(self.path, None)
        except FileNotFoundError:
            logger.warning(f"[run_state] Lock {self.path} disappeared while held")

    def release(self) -> None:
        if self.held:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
            self.held = False
