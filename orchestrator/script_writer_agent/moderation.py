"""
Moderation Node - Content-policy gate for generated text

Checks text against:
- the hosted moderation endpoint (category flags)
- a configured term blocklist

Flagged script lines are rewritten by the chat model and re-checked. A line
that is still flagged after MODERATION_MAX_REWRITES rewrites is dropped.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from config import settings
from agents.llm_json import call_json
from script_writer_agent.schemas import RewritePayload
from workflow.errors import REASON_POLICY_FLAGGED, PipelineError, from_remote_exception
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _flagged_categories(result: Any) -> List[str]:
    categories = getattr(result, 'categories', None)
    if categories is None:
        return []
    if hasattr(categories, 'model_dump'):
        data = categories.model_dump(by_alias=True)
    else:
        data = dict(categories)
    return sorted(name for name, hit in data.items() if hit)


class ModerationGate:

    def __init__(
        self,
        client,
        policy: RetryPolicy,
        *,
        enabled: bool = True,
        blocklist: Optional[List[str]] = None,
        moderation_model: str = settings.MODERATION_MODEL,
        chat_model: str = settings.OPENAI_MODEL,
        max_rewrites: int = settings.MODERATION_MAX_REWRITES,
    ):
        self.client = client
        self.policy = policy
        self.enabled = enabled
        self.moderation_model = moderation_model
        self.chat_model = chat_model
        self.max_rewrites = max_rewrites
        self._blocklist = [
            (term, re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)) for term in (blocklist or [])
        ]

    async def check(self, text: str) -> List[str]:
        """Return policy flags for `text`; an empty list means clean."""
        flags = [f"blocklist:{term}" for term, pattern in self._blocklist if pattern.search(text)]
        if self.enabled and self.client is not None:
            flags.extend(await self.policy.call(lambda: self._moderate(text), label="moderation"))
        return flags

    async def _moderate(self, text: str) -> List[str]:
        try:
            response = await self.client.moderations.create(model=self.moderation_model, input=text)
        except Exception as e:
            raise from_remote_exception(e, reason=REASON_POLICY_FLAGGED) from e
        flags: List[str] = []
        for result in response.results:
            if getattr(result, 'flagged', False):
                flags.extend(_flagged_categories(result) or ['flagged'])
        return flags

    async def rewrite(self, text: str, flags: List[str]) -> str:
        system = (
            "You are a broadcast standards editor. Rewrite the line so it keeps its factual "
            "meaning but no longer contains the flagged content. Keep it spoken-word friendly "
            'and about the same length. Answer as JSON: {"text": "..."}'
        )
        user = f"Flags: {', '.join(flags)}\nLine: {text}"
        payload = await self.policy.call(
            lambda: call_json(
                self.client,
                model=self.chat_model,
                system=system,
                user=user,
                schema=RewritePayload,
                reason=REASON_POLICY_FLAGGED,
                label="moderation rewrite",
                temperature=0.2,
                max_tokens=512,
            ),
            label="moderation rewrite",
        )
        return payload.text

    async def clean(self, text: str) -> Optional[str]:
        """
        Return `text` unchanged if clean, a rewritten version if a rewrite
        passes, or None if it is still flagged after the allowed rewrites.
        """
        flags = await self.check(text)
        attempts = 0
        while flags:
            if attempts >= self.max_rewrites or self.client is None:
                logger.warning(f"[moderation] Dropping line after {attempts} rewrite(s): {flags}")
                return None
            attempts += 1
            logger.info(f"[moderation] Line flagged {flags}, rewrite {attempts}/{self.max_rewrites}")
            try:
                text = await self.rewrite(text, flags)
            except PipelineError as e:
                logger.warning(f"[moderation] Rewrite {attempts} failed: {e}")
                continue
            flags = await self.check(text)
        return text

    async def clean_lines(self, lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Moderate script lines in order; dropped lines are removed, order is kept."""
        kept = []
        for line in lines:
            text = await self.clean(line['text'])
            if text is None:
                continue
            kept.append({**line, 'text': text})
        logger.info(f"[moderation] Kept {len(kept)}/{len(lines)} lines")
        return kept
