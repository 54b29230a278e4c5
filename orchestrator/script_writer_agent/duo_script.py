"""
DuoScript Node - Generate TTS-ready two-host dialogue

Converts rank-ordered summaries into a dialogue script with:
- Two hosts (speaker A and speaker B) alternating
- Facts only from the provided summaries
- Items covered in rank order; policy-flagged items get a title-only mention
- Episode title, short description and long-form show notes
"""

import json
import logging
from typing import Any, Dict, List, Optional

from config import settings
from agents.llm_json import call_json
from script_writer_agent.schemas import ScriptPayload
from workflow.errors import REASON_COMPOSE_FAILED
from workflow.models import SPEAKER_A, SPEAKER_B, ScriptSegment
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _estimate_duration(text: str) -> float:
    """
    Estimate spoken duration in seconds based on word count.

    Args:
        text: The text to estimate

    Returns:
        Estimated duration in seconds
    """
    word_count = len(text.split())
    return round((word_count / settings.SCRIPT_WPM_ESTIMATE) * 60, 2)


def build_brief(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Shape composition input for the prompt.

    Each entry is {'item': {...}, 'summary': Summary | None}. Entries without a
    usable summary are kept at reduced detail (title only) in their rank slot.
    """
    brief = []
    for entry in entries:
        item = entry['item']
        summary = entry.get('summary')
        brief.append({
            'item_id': item['id'],
            'rank': item['rank'],
            'title': item['title'],
            'detail': 'full' if summary else 'title-only',
            'summary': summary['text'] if summary else None,
        })
    return brief


async def draft_script(
    client,
    policy: RetryPolicy,
    entries: List[Dict[str, Any]],
    *,
    date: str,
    model: str = settings.OPENAI_MODEL,
    speaker_names: Optional[List[str]] = None,
    max_words_per_line: int = settings.SCRIPT_MAX_WORDS_PER_LINE,
) -> Dict[str, Any]:
    """
    One chat-model call for the whole episode script.

    Returns:
        Validated ScriptPayload as a dict (title, description, long_form, lines)
    """
    names = speaker_names or settings.SCRIPT_SPEAKER_NAMES
    host_a, host_b = (names + ['Host B'])[:2]

    system = (
        "You are a senior broadcast writer producing a two-host daily tech news podcast script. "
        f"Speaker A is {host_a}, speaker B is {host_b}. Hosts alternate lines. "
        "Cover the items strictly in the given rank order. Use only facts from the provided summaries. "
        "Items marked detail='title-only' get a single short mention of the title and nothing more. "
        f"Each line has at most {max_words_per_line} words and is written to be spoken: "
        "numbers as words, no URLs, no markdown. "
        "Open with a short greeting and close with a short sign-off. "
        "Tag each line with the item_ids it talks about (empty for greeting, transitions and sign-off). "
        "Also write a title (max 12 words), a one-sentence description, and long_form show notes "
        "with one short paragraph per item. "
        'Answer as JSON: {"title": "...", "description": "...", "long_form": "...", '
        '"lines": [{"speaker": "A", "text": "...", "item_ids": ["..."]}]}'
    )
    user = (
        f"Episode date: {date}\n\n"
        f"Items:\n{json.dumps(build_brief(entries), indent=2, ensure_ascii=False)}"
    )

    payload = await policy.call(
        lambda: call_json(
            client,
            model=model,
            system=system,
            user=user,
            schema=ScriptPayload,
            reason=REASON_COMPOSE_FAILED,
            label="compose script",
            temperature=0.5,
            max_tokens=8192,
        ),
        label="compose script",
    )
    logger.info(f"[duo_script] Draft has {len(payload.lines)} lines: {payload.title}")
    return payload.model_dump()


def merge_same_speaker(lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge adjacent lines by the same speaker so the script strictly alternates."""
    merged: List[Dict[str, Any]] = []
    for line in lines:
        text = ' '.join(line['text'].split())
        if not text:
            continue
        if merged and merged[-1]['speaker'] == line['speaker']:
            previous = merged[-1]
            previous['text'] = f"{previous['text']} {text}"
            previous['item_ids'] = list(dict.fromkeys(previous['item_ids'] + list(line.get('item_ids') or [])))
        else:
            merged.append({'speaker': line['speaker'], 'text': text, 'item_ids': list(line.get('item_ids') or [])})
    return merged


def index_segments(lines: List[Dict[str, Any]]) -> List[ScriptSegment]:
    """Assign dense sequence indices 0..N-1. These indices are final."""
    segments: List[ScriptSegment] = []
    for index, line in enumerate(lines):
        speaker = line['speaker'] if line['speaker'] in (SPEAKER_A, SPEAKER_B) else SPEAKER_A
        segments.append({
            'index': index,
            'speaker': speaker,
            'text': line['text'],
            'item_ids': line.get('item_ids', []),
            'secs_estimate': _estimate_duration(line['text']),
            'audio': None,
            'duration_sec': None,
        })
    return segments
