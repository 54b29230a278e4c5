"""
Stage 1: Source Fetch

Reads the ranked front page from the Hacker News API: the ordered id list
from topstories.json, then item/<id>.json for the top SOURCE_ITEM_LIMIT ids.
Stateless read; a non-200 or empty listing is a fetch failure.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import settings
from workflow.errors import (
    REASON_NO_CONTENT,
    PermanentUnitError,
    WholeRunError,
    error_for_status,
    from_remote_exception,
)
from workflow.models import Item

logger = logging.getLogger(__name__)


class SourceFetcher:
    """Fetches ranked candidate items from the aggregator."""

    def __init__(
        self,
        api_url: str = settings.SOURCE_API_URL,
        timeout_sec: int = settings.REQUEST_TIMEOUT,
        user_agent: str = settings.USER_AGENT,
    ):
        self.api_url = api_url.rstrip('/')
        self.timeout_sec = timeout_sec
        self.user_agent = user_agent

    async def fetch_ranked_items(self, limit: int = settings.SOURCE_ITEM_LIMIT) -> List[Item]:
        """
        Fetch the top `limit` stories in rank order.

        Raises:
            TransientRemoteError: timeout, 5xx or rate-limit on the listing
            PermanentUnitError: listing is not JSON or not a list of ids
            WholeRunError: listing empty, or no story survived the item fetch
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        headers = {'User-Agent': self.user_agent}

        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            ids = await self._get_json(session, f"{self.api_url}/topstories.json")
            if ids is not None and not isinstance(ids, list):
                raise PermanentUnitError(
                    f"Listing is a {type(ids).__name__}, expected a list of ids", reason=REASON_NO_CONTENT
                )
            if not ids:
                raise WholeRunError("Aggregator returned an empty listing", reason=REASON_NO_CONTENT)

            top_ids = ids[:limit]
            logger.info(f"[collector] Listing returned {len(ids)} ids, fetching top {len(top_ids)}")

            raw = await asyncio.gather(
                *(self._get_json(session, f"{self.api_url}/item/{item_id}.json") for item_id in top_ids),
                return_exceptions=True,
            )

        items: List[Item] = []
        for rank, (item_id, payload) in enumerate(zip(top_ids, raw), 1):
            if isinstance(payload, BaseException):
                logger.warning(f"[collector] Item {item_id} fetch failed: {payload}")
                continue
            item = _to_item(item_id, payload, rank)
            if item is None:
                logger.warning(f"[collector] Item {item_id} is deleted, dead or untitled; skipping")
                continue
            items.append(item)

        if not items:
            raise WholeRunError("No usable items in listing", reason=REASON_NO_CONTENT)

        logger.info(f"[collector] Collected {len(items)} ranked items")
        return items

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Any:
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise error_for_status(response.status, url, reason=REASON_NO_CONTENT)
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise PermanentUnitError(f"Malformed JSON from {url}: {e}", reason=REASON_NO_CONTENT) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise from_remote_exception(e, reason=REASON_NO_CONTENT) from e


def _to_item(item_id: Any, payload: Optional[Dict[str, Any]], rank: int) -> Optional[Item]:
    if not isinstance(payload, dict) or payload.get('deleted') or payload.get('dead'):
        return None
    title = str(payload.get('title') or '').strip()
    if not title:
        return None
    return {
        'id': str(payload.get('id', item_id)),
        'url': payload.get('url') or '',
        'title': title,
        'rank': rank,
        'score': payload.get('score') if isinstance(payload.get('score'), int) else 0,
        # Self posts (Ask HN etc.) carry their body here instead of a url
        'article_text': payload.get('text') or '',
        'comment_text': '',
    }
