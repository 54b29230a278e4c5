"""
Extractors package for content extraction.

Provides utilities for:
- HTML fetching with rate limiting (html_fetcher)
- Text extraction from HTML (text_extractor)
- Readability service fallback (readability_service)
- Discussion thread flattening (discussion)
"""

from .html_fetcher import HTMLFetcher
from .text_extractor import TextExtractor
from .readability_service import ReadabilityService
from .discussion import DiscussionFetcher

__all__ = ['HTMLFetcher', 'TextExtractor', 'ReadabilityService', 'DiscussionFetcher']
