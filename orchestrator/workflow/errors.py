"""
Error taxonomy for the daily episode workflow.

- TransientRemoteError: timeout, 5xx, rate-limit, connection failure. Retried.
- PermanentUnitError: one item or segment cannot be produced. Unit dropped.
- WholeRunError: the run cannot produce an episode. Run goes to FAILED.
- PublishError: a store write ran out of retries. The publish stage is retried
  up to its bound before the run fails.

Every error carries a machine-readable reason code recorded in the run record.
"""

import asyncio
from typing import Optional

import aiohttp
import openai

# Unit-level reasons
REASON_EXTRACTION_FAILED = 'extraction-failed'
REASON_EMPTY_CONTENT = 'empty-content'
REASON_SUMMARY_INVALID = 'summary-invalid'
REASON_SUMMARY_FAILED = 'summary-failed'
REASON_POLICY_FLAGGED = 'policy-flagged'
REASON_SYNTHESIS_FAILED = 'synthesis-failed'

# Run-level reasons
REASON_NO_CONTENT = 'no-content'
REASON_NO_ELIGIBLE_ITEMS = 'no-eligible-items'
REASON_EMPTY_SCRIPT = 'empty-script'
REASON_COMPOSE_FAILED = 'compose-failed'
REASON_NO_AUDIO = 'no-audio'
REASON_ASSEMBLER_EXHAUSTED = 'assembler-exhausted'
REASON_PUBLISH_EXHAUSTED = 'publish-exhausted'
REASON_UNKNOWN = 'unknown'

# Outcome reasons for a partially-published episode, besides dropped-item reasons
REASON_SEGMENT_GAPS = 'segment-gaps'

TRANSIENT_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class PipelineError(Exception):
    """Base error; `reason` is the code written to the run record."""

    default_reason = REASON_UNKNOWN

    def __init__(self, message: str = '', *, reason: Optional[str] = None) -> None:
        super().__init__(message or (reason or self.default_reason))
        self.reason = reason or self.default_reason


class TransientRemoteError(PipelineError):
    default_reason = 'transient'


class PermanentUnitError(PipelineError):
    pass


class WholeRunError(PipelineError):
    pass


class PublishError(PipelineError):
    """A store write exhausted its retries; the publish stage as a whole may be attempted again."""

    default_reason = REASON_PUBLISH_EXHAUSTED


def is_transient_status(status: int) -> bool:
    return status in TRANSIENT_HTTP_STATUSES or status >= 500


def error_for_status(status: int, url: str, *, reason: str) -> PipelineError:
    """Map a non-2xx HTTP status to a transient or permanent error."""
    message = f"HTTP {status} from {url}"
    if is_transient_status(status):
        return TransientRemoteError(message)
    return PermanentUnitError(message, reason=reason)


def from_remote_exception(exc: BaseException, *, reason: str) -> PipelineError:
    """
    Classify an exception raised by a remote client library.

    aiohttp connection failures and timeouts are transient. OpenAI SDK errors
    are transient for timeouts, connection errors, rate limits and 5xx, and
    permanent for the remaining 4xx responses.
    """
    if isinstance(exc, PipelineError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError)):
        return TransientRemoteError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, aiohttp.ClientResponseError):
        return error_for_status(exc.status, str(exc.request_info.url), reason=reason)
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return TransientRemoteError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, openai.APIStatusError):
        if is_transient_status(exc.status_code):
            return TransientRemoteError(f"{type(exc).__name__}: {exc}")
        return PermanentUnitError(f"{type(exc).__name__}: {exc}", reason=reason)
    if isinstance(exc, aiohttp.ClientError):
        return TransientRemoteError(f"{type(exc).__name__}: {exc}")
    return PermanentUnitError(f"{type(exc).__name__}: {exc}", reason=reason)
