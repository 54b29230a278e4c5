"""
Third-party readability service, used when direct parsing of a page fails.

The service is called as `<service_url><article_url>` and answers with the
readable article body as plain text.
"""

import logging
from typing import Optional

from extractors.html_fetcher import HTMLFetcher

logger = logging.getLogger(__name__)


class ReadabilityService:
    def __init__(self, fetcher: HTMLFetcher, service_url: str):
        self.fetcher = fetcher
        self.service_url = service_url

    @property
    def enabled(self) -> bool:
        return bool(self.service_url)

    async def fetch_text(self, url: str) -> Optional[str]:
        _, body = await self.fetcher.fetch(f"{self.service_url}{url}", accept='text/plain')
        text = body.decode('utf-8', errors='ignore').strip()
        logger.info(f"[readability_service] {len(text.split())} words for {url}")
        return text or None
