"""
HTML fetcher with per-domain politeness.

Features:
- Async HTTP with aiohttp
- Per-domain rate limiting (QPS)
- Per-domain concurrency control
- Status classification into transient / permanent errors

Retries are not done here; callers wrap fetches in the shared RetryPolicy.
"""

import asyncio
import json
import logging
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

from workflow.errors import (
    REASON_EXTRACTION_FAILED,
    PermanentUnitError,
    error_for_status,
    from_remote_exception,
)

logger = logging.getLogger(__name__)


class HTMLFetcher:
    """
    Async HTTP fetcher with rate limiting and politeness controls.
    """

    def __init__(
        self,
        user_agent: str,
        timeout_sec: int = 20,
        per_domain_qps: float = 1.0,
        per_domain_concurrency: int = 1,
        follow_redirects: bool = True,
    ):
        """
        Initialize HTMLFetcher.

        Args:
            user_agent: User agent string
            timeout_sec: Timeout for HTTP requests
            per_domain_qps: Max queries per second per domain
            per_domain_concurrency: Max concurrent requests per domain
            follow_redirects: Whether to follow redirects
        """
        self.user_agent = user_agent
        self.timeout_sec = timeout_sec
        self.per_domain_qps = per_domain_qps
        self.follow_redirects = follow_redirects

        # Per-domain tracking
        self.domain_semaphores: Dict[str, asyncio.Semaphore] = {}
        self.domain_last_request: Dict[str, float] = {}
        self.per_domain_concurrency = per_domain_concurrency

    async def fetch(self, url: str, accept: Optional[str] = None) -> Tuple[str, bytes]:
        """
        Fetch a URL with per-domain rate limiting.

        Args:
            url: URL to fetch
            accept: Optional Accept header override

        Returns:
            Tuple of (final_url, body_bytes)

        Raises:
            TransientRemoteError: timeout, connection error, 408/429/5xx
            PermanentUnitError: other non-2xx responses
        """
        domain = urlparse(url).netloc

        # Get or create semaphore for this domain
        if domain not in self.domain_semaphores:
            self.domain_semaphores[domain] = asyncio.Semaphore(self.per_domain_concurrency)

        async with self.domain_semaphores[domain]:
            await self._enforce_qps(domain)
            return await self._fetch_once(url, accept)

    async def fetch_json(self, url: str, reason: str = REASON_EXTRACTION_FAILED) -> object:
        """Fetch and decode a JSON document; an undecodable body is a PermanentUnitError."""
        _, body = await self.fetch(url, accept='application/json')
        try:
            return json.loads(body.decode('utf-8', errors='replace'))
        except ValueError as e:
            logger.warning(f"[html_fetcher] Malformed JSON from {url}: {e}")
            raise PermanentUnitError(f"Malformed JSON from {url}: {e}", reason=reason) from e

    async def _enforce_qps(self, domain: str) -> None:
        """
        Enforce QPS limit for domain by sleeping if needed.

        Args:
            domain: Domain name
        """
        if domain in self.domain_last_request and self.per_domain_qps > 0:
            elapsed = time.time() - self.domain_last_request[domain]
            min_interval = 1.0 / self.per_domain_qps

            if elapsed < min_interval:
                sleep_time = min_interval - elapsed
                logger.debug(f"[html_fetcher] Sleeping {sleep_time:.2f}s for QPS limit on {domain}")
                await asyncio.sleep(sleep_time)

        self.domain_last_request[domain] = time.time()

    async def _fetch_once(self, url: str, accept: Optional[str]) -> Tuple[str, bytes]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)

        headers = {
            'User-Agent': self.user_agent,
            'Accept': accept or 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
            'Accept-Encoding': 'gzip, deflate',
        }

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=headers, allow_redirects=self.follow_redirects) as response:
                    body = await response.read()
                    if not 200 <= response.status < 300:
                        logger.warning(f"[html_fetcher] HTTP {response.status} for {url}")
                        raise error_for_status(response.status, url, reason=REASON_EXTRACTION_FAILED)
                    logger.debug(f"[html_fetcher] Fetched {url} -> {response.status} ({len(body)} bytes)")
                    return str(response.url), body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[html_fetcher] Error fetching {url}: {e}")
            raise from_remote_exception(e, reason=REASON_EXTRACTION_FAILED) from e
