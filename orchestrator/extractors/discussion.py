"""
Discussion thread text.

Pulls the full comment tree for a story from the Algolia items API in one
request and flattens it breadth-first, so top-level comments come first.
"""

import logging
from collections import deque
from typing import Any, Dict, List

from extractors.html_fetcher import HTMLFetcher
from extractors.text_extractor import html_to_text, truncate_text

logger = logging.getLogger(__name__)


def flatten_comments(tree: Dict[str, Any], max_comments: int) -> List[str]:
    """Breadth-first walk over `children`, skipping deleted and empty comments."""
    lines: List[str] = []
    queue = deque(tree.get('children') or [])
    while queue and len(lines) < max_comments:
        node = queue.popleft()
        if not isinstance(node, dict):
            continue
        text = html_to_text(node.get('text') or '')
        if text:
            author = node.get('author') or 'anonymous'
            lines.append(f"{author}: {' '.join(text.split())}")
        queue.extend(node.get('children') or [])
    return lines


class DiscussionFetcher:
    def __init__(self, fetcher: HTMLFetcher, api_url: str, max_comments: int = 40, max_chars: int = 8000):
        self.fetcher = fetcher
        self.api_url = api_url.rstrip('/')
        self.max_comments = max_comments
        self.max_chars = max_chars

    async def fetch_text(self, item_id: str) -> str:
        tree = await self.fetcher.fetch_json(f"{self.api_url}/{item_id}")
        if not isinstance(tree, dict):
            return ''
        lines = flatten_comments(tree, self.max_comments)
        logger.debug(f"[discussion] {item_id}: {len(lines)} comments")
        return truncate_text('\n'.join(lines), self.max_chars)
