"""Run-scoped and durable records, kept as JSON-compatible dicts."""

from typing import Any, Dict, List, Optional, TypedDict

# Stages, in their fixed total order. FAILED is terminal and reachable from any stage.
STAGE_FETCH = 'FETCH'
STAGE_EXTRACT = 'EXTRACT'
STAGE_SUMMARIZE = 'SUMMARIZE'
STAGE_COMPOSE = 'COMPOSE'
STAGE_SYNTHESIZE = 'SYNTHESIZE'
STAGE_ASSEMBLE = 'ASSEMBLE'
STAGE_PUBLISH = 'PUBLISH'
STAGE_DONE = 'DONE'
STAGE_FAILED = 'FAILED'

STAGE_ORDER = [
    STAGE_FETCH,
    STAGE_EXTRACT,
    STAGE_SUMMARIZE,
    STAGE_COMPOSE,
    STAGE_SYNTHESIZE,
    STAGE_ASSEMBLE,
    STAGE_PUBLISH,
    STAGE_DONE,
]
TERMINAL_STAGES = {STAGE_DONE, STAGE_FAILED}

# Unit statuses
UNIT_PENDING = 'pending'
UNIT_RUNNING = 'running'
UNIT_DONE = 'done'
UNIT_FAILED = 'failed'

# Run outcomes
OUTCOME_PUBLISHED = 'published'
OUTCOME_PARTIAL = 'partially-published'
OUTCOME_FAILED = 'failed'

SPEAKER_A = 'A'
SPEAKER_B = 'B'


class Item(TypedDict, total=False):
    """A ranked candidate from the source aggregator."""
    id: str
    url: str
    title: str
    rank: int
    score: int
    article_text: str
    comment_text: str
    language: str


class Summary(TypedDict, total=False):
    item_id: str
    text: str
    language: str
    word_count: int
    policy_flags: List[str]


class ScriptSegment(TypedDict, total=False):
    index: int
    speaker: str  # 'A' | 'B'
    text: str
    item_ids: List[str]
    secs_estimate: float
    audio: Optional[str]  # audio artifact name once synthesized
    duration_sec: Optional[float]


class Episode(TypedDict, total=False):
    date: str
    title: str
    description: str
    long_form: str
    segments: List[ScriptSegment]
    items: List[Dict[str, Any]]  # id, title, url, rank, status, reason
    audio_key: Optional[str]
    audio_sha256: Optional[str]
    duration_sec: Optional[float]
    status: str  # 'draft' | 'published'
    outcome: str
    published_at: Optional[str]


class UnitStatus(TypedDict, total=False):
    status: str
    attempts: int
    reason: Optional[str]
    updated_at: str


class WorkflowRun(TypedDict, total=False):
    run_id: str
    date: str
    trigger: str
    stage: str
    status: str  # 'active' | 'done' | 'failed'
    outcome: Optional[str]
    reason: Optional[str]
    created_at: str
    updated_at: str
    stage_history: List[Dict[str, str]]
    stage_attempts: Dict[str, int]
    units: Dict[str, Dict[str, UnitStatus]]
    items: List[Dict[str, Any]]
    dropped: Dict[str, str]
