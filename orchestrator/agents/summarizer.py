"""
Stage 3: Summarization

One chat-model call per item turns extracted article + discussion text into a
short localized summary with policy flags. The model's own flags are merged
with the moderation gate's verdict on the summary text.
"""

import logging
import re
from typing import Any, Dict

from config import settings
from agents.llm_json import call_json
from script_writer_agent.moderation import ModerationGate
from script_writer_agent.schemas import SummaryPayload
from workflow.errors import REASON_SUMMARY_INVALID
from workflow.models import Item, Summary
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)

ARTICLE_PROMPT_CHARS = 12000
COMMENTS_PROMPT_CHARS = 4000


def clip_to_words(text: str, max_words: int) -> str:
    """Keep whole sentences up to `max_words`; fall back to a hard word cut."""
    if len(text.split()) <= max_words:
        return text
    sentences = re.split(r'(?<=[.!?])\s+', text)
    kept, count = [], 0
    for sentence in sentences:
        n = len(sentence.split())
        if count + n > max_words:
            break
        kept.append(sentence)
        count += n
    if kept:
        return ' '.join(kept)
    return ' '.join(text.split()[:max_words])


class Summarizer:

    def __init__(
        self,
        client,
        moderation: ModerationGate,
        policy: RetryPolicy,
        *,
        model: str = settings.OPENAI_MODEL,
        language: str = settings.SUMMARY_LANGUAGE,
        min_words: int = settings.SUMMARY_MIN_WORDS,
        max_words: int = settings.SUMMARY_MAX_WORDS,
    ):
        self.client = client
        self.moderation = moderation
        self.policy = policy
        self.model = model
        self.language = language
        self.min_words = min_words
        self.max_words = max_words

    async def summarize(self, item: Item, extraction: Dict[str, Any]) -> Summary:
        """
        Summarize one item.

        Raises:
            TransientRemoteError: after the retry bound is exhausted
            PermanentUnitError: response malformed twice or rejected by the API
        """
        system = (
            "You are a news editor preparing notes for a two-host daily tech podcast. "
            f"Write a neutral summary in language '{self.language}' of "
            f"{self.min_words}-{self.max_words} words covering what happened and why it matters, "
            "then one sentence on how the discussion reacted if discussion text is given. "
            "Use only facts from the provided text. "
            "List policy_flags for content that should not be broadcast (graphic violence, "
            "sexual content, hate, harassment, self-harm, personal data); use an empty list otherwise. "
            'Answer as JSON: {"summary": "...", "policy_flags": []}'
        )
        user = (
            f"Title: {item['title']}\n"
            f"URL: {item.get('url') or '(discussion post)'}\n\n"
            f"Article:\n{extraction.get('article_text', '')[:ARTICLE_PROMPT_CHARS] or '(none)'}\n\n"
            f"Discussion:\n{extraction.get('comment_text', '')[:COMMENTS_PROMPT_CHARS] or '(none)'}"
        )
        label = f"summarize {item['id']}"

        payload = await self.policy.call(
            lambda: call_json(
                self.client,
                model=self.model,
                system=system,
                user=user,
                schema=SummaryPayload,
                reason=REASON_SUMMARY_INVALID,
                label=label,
                max_tokens=1024,
            ),
            label=label,
        )

        text = clip_to_words(payload.summary, self.max_words)
        flags = list(dict.fromkeys(payload.policy_flags + await self.moderation.check(text)))
        if flags:
            logger.info(f"[summarizer] {item['id']} flagged: {flags}")

        return {
            'item_id': item['id'],
            'text': text,
            'language': self.language,
            'word_count': len(text.split()),
            'policy_flags': flags,
        }
