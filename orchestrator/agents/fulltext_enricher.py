"""
Stage 2: Content Extraction

Turns one ranked item into plain article text plus discussion text.

Per item:
  direct fetch + extractor chain (trafilatura, readability)
    -> readability service on direct-parse failure
    -> discussion thread from the comments API
  -> length bound, language detection

Failures are isolated to the item. "Extraction failed" (the article could not
be fetched or parsed by any path) is reported separately from "empty content"
(everything was reachable but there is nothing to say), so the orchestrator
can drop the item with the right reason.
"""

import logging
from typing import Any, Dict, Optional

from config import settings
from extractors import DiscussionFetcher, HTMLFetcher, ReadabilityService, TextExtractor
from extractors.text_extractor import html_to_text, truncate_text
from workflow.errors import (
    REASON_EMPTY_CONTENT,
    REASON_EXTRACTION_FAILED,
    PermanentUnitError,
    PipelineError,
)
from workflow.models import Item
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ContentExtractor:

    def __init__(
        self,
        fetcher: HTMLFetcher,
        text_extractor: TextExtractor,
        readability: Optional[ReadabilityService],
        discussion: Optional[DiscussionFetcher],
        policy: RetryPolicy,
    ):
        self.fetcher = fetcher
        self.text_extractor = text_extractor
        self.readability = readability
        self.discussion = discussion
        self.policy = policy

    @classmethod
    def from_settings(cls, policy: RetryPolicy) -> 'ContentExtractor':
        fetcher = HTMLFetcher(
            user_agent=settings.USER_AGENT,
            timeout_sec=settings.EXTRACT_HTTP_TIMEOUT_SEC,
            per_domain_qps=settings.EXTRACT_PER_DOMAIN_QPS,
            per_domain_concurrency=settings.EXTRACT_PER_DOMAIN_CONCURRENCY,
        )
        text_extractor = TextExtractor(
            extractor_sequence=settings.EXTRACTOR_SEQUENCE,
            min_accept_words=settings.EXTRACT_MIN_ACCEPT_WORDS,
            max_chars=settings.EXTRACT_MAX_ARTICLE_CHARS,
        )
        return cls(
            fetcher=fetcher,
            text_extractor=text_extractor,
            readability=ReadabilityService(fetcher, settings.READABILITY_SERVICE_URL),
            discussion=DiscussionFetcher(
                fetcher,
                settings.DISCUSSION_API_URL,
                max_comments=settings.EXTRACT_MAX_COMMENTS,
                max_chars=settings.EXTRACT_MAX_COMMENT_CHARS,
            ),
            policy=policy,
        )

    async def extract(self, item: Item) -> Dict[str, Any]:
        """
        Extract article and discussion text for one item.

        Returns:
            Dict with article_text, comment_text, language, extraction_method

        Raises:
            PermanentUnitError: reason 'extraction-failed' or 'empty-content'
        """
        if item.get('url'):
            article = await self._extract_article(item)
        else:
            # Self post: the body came with the listing
            text = truncate_text(html_to_text(item.get('article_text', '')), self.text_extractor.max_chars)
            article = {'clean_text': text, 'extraction_method': 'self-post', 'language_detected': 'unknown'}

        comment_text = await self._extract_discussion(item)

        if not article['clean_text'] and not comment_text:
            raise PermanentUnitError(f"No text for item {item['id']}", reason=REASON_EMPTY_CONTENT)

        return {
            'item_id': item['id'],
            'article_text': article['clean_text'],
            'comment_text': comment_text,
            'language': article['language_detected'],
            'extraction_method': article['extraction_method'],
        }

    async def _extract_article(self, item: Item) -> Dict[str, Any]:
        url = item['url']
        label = f"extract {item['id']}"
        fetch_error: Optional[PipelineError] = None

        try:
            _, html_bytes = await self.policy.call(lambda: self.fetcher.fetch(url), label=label)
            result = self.text_extractor.extract(html_bytes, url)
            if result is not None:
                return result
            logger.info(f"[enricher] Direct parse failed for {url}, trying readability service")
        except PipelineError as e:
            fetch_error = e
            logger.warning(f"[enricher] Direct fetch failed for {url}: {e}")

        if self.readability is not None and self.readability.enabled:
            try:
                text = await self.policy.call(lambda: self.readability.fetch_text(url), label=f"{label} (readability)")
                result = self.text_extractor.accept(text, 'readability-service')
                if result is not None:
                    return result
            except PipelineError as e:
                fetch_error = fetch_error or e
                logger.warning(f"[enricher] Readability service failed for {url}: {e}")

        if fetch_error is None:
            # Page was reachable but held nothing usable
            raise PermanentUnitError(f"No readable text at {url}", reason=REASON_EMPTY_CONTENT)
        raise PermanentUnitError(f"Extraction failed for {url}: {fetch_error}", reason=REASON_EXTRACTION_FAILED)

    async def _extract_discussion(self, item: Item) -> str:
        if self.discussion is None:
            return ''
        try:
            return await self.policy.call(
                lambda: self.discussion.fetch_text(item['id']),
                label=f"discussion {item['id']}",
            )
        except PipelineError as e:
            logger.warning(f"[enricher] Discussion unavailable for {item['id']}: {e}")
            return ''
