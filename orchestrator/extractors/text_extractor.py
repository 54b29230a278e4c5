"""
Text extractor with multiple fallback libraries.

Supports:
- trafilatura (primary)
- readability-lxml

Also handles:
- HTML fragment to plain text (self posts, comments)
- Language detection
- Length bound
"""

import logging
import re
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


def html_to_text(html: str) -> str:
    """Flatten an HTML fragment to plain text, one paragraph per line."""
    if not html:
        return ''
    soup = BeautifulSoup(html, 'html.parser')
    for tag in soup(['script', 'style', 'noscript']):
        tag.decompose()
    text = soup.get_text(separator='\n', strip=True)
    lines = [line.strip() for line in text.splitlines()]
    return '\n'.join(line for line in lines if line)


def truncate_text(text: str, max_chars: int) -> str:
    """Cut to `max_chars`, backing off to the last whitespace so words stay whole."""
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    space = cut.rfind(' ')
    if space > max_chars * 0.8:
        cut = cut[:space]
    return cut.rstrip()


class TextExtractor:
    """
    Multi-library text extraction with fallback chain.
    """

    def __init__(
        self,
        extractor_sequence: List[str],
        min_accept_words: int = 80,
        max_chars: int = 20000,
    ):
        """
        Initialize TextExtractor.

        Args:
            extractor_sequence: Ordered list of extractors to try
            min_accept_words: Minimum word count to accept extraction
            max_chars: Maximum characters to keep from extracted text
        """
        self.extractor_sequence = extractor_sequence
        self.min_accept_words = min_accept_words
        self.max_chars = max_chars

    def extract(self, html_bytes: bytes, url: str) -> Optional[Dict]:
        """
        Extract text from HTML using fallback chain.

        Args:
            html_bytes: Raw HTML content
            url: Source URL (for context)

        Returns:
            Dict with {
                'clean_text': str,
                'word_count': int,
                'extraction_method': str,
                'language_detected': str
            } or None if extraction failed
        """
        html_text = html_bytes.decode('utf-8', errors='ignore')

        for extractor_name in self.extractor_sequence:
            try:
                text = self._try_extractor(extractor_name.strip(), html_text, url)
            except Exception as e:
                logger.debug(f"[text_extractor] {extractor_name} failed for {url}: {e}")
                continue

            result = self.accept(text, extractor_name.strip())
            if result is not None:
                logger.info(
                    f"[text_extractor] Extracted {result['word_count']} words "
                    f"using {extractor_name} from {url}"
                )
                return result

        logger.warning(f"[text_extractor] All extractors failed for {url}")
        return None

    def accept(self, text: Optional[str], method: str) -> Optional[Dict]:
        """Apply the length gate and bound to raw extracted text."""
        if not text:
            return None
        text = re.sub(r'\n{3,}', '\n\n', text).strip()
        if len(text.split()) < self.min_accept_words:
            return None
        text = truncate_text(text, self.max_chars)
        return {
            'clean_text': text,
            'word_count': len(text.split()),
            'extraction_method': method,
            'language_detected': self._detect_language(text),
        }

    def _try_extractor(self, name: str, html: str, url: str) -> Optional[str]:
        if name == 'trafilatura':
            return self._extract_trafilatura(html, url)
        elif name == 'readability':
            return self._extract_readability(html, url)
        else:
            logger.warning(f"[text_extractor] Unknown extractor: {name}")
            return None

    def _extract_trafilatura(self, html: str, url: str) -> Optional[str]:
        """Extract using trafilatura."""
        import trafilatura

        return trafilatura.extract(
            html,
            url=url,
            include_comments=False,
            include_tables=False,
            no_fallback=False
        )

    def _extract_readability(self, html: str, url: str) -> Optional[str]:
        """Extract using readability-lxml."""
        from readability import Document

        doc = Document(html)
        return html_to_text(doc.summary())

    def _detect_language(self, text: str) -> str:
        """
        Detect language of text.

        Args:
            text: Text to analyze

        Returns:
            ISO 639-1 language code (e.g., 'en')
        """
        try:
            from langdetect import detect

            # Use first 1000 chars for speed
            return detect(text[:1000])

        except Exception as e:
            logger.debug(f"[text_extractor] Language detection failed: {e}")
            return 'unknown'
