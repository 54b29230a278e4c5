"""
Schema-checked JSON calls to the chat model.

Every generative response is parsed and validated against a pydantic model
before anything downstream sees it. A malformed response is retried once with
a stricter instruction; a second failure is a PermanentUnitError. Transport
errors are classified and left to the caller's RetryPolicy.
"""

import json
import logging
from typing import List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from workflow.errors import PermanentUnitError, from_remote_exception

logger = logging.getLogger(__name__)

M = TypeVar('M', bound=BaseModel)

STRICT_SUFFIX = (
    "\n\nYour previous answer could not be parsed. Respond with ONE JSON object only, "
    "no markdown, no code fences, no commentary, exactly matching this JSON schema:\n"
)


def strip_code_fences(response_text: str) -> str:
    """Remove markdown code blocks if present."""
    text = response_text.strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    return text


def parse_payload(raw: Optional[str], schema: Type[M]) -> M:
    """Raises ValueError / ValidationError on anything that does not fit `schema`."""
    if not raw:
        raise ValueError("empty response")
    return schema.model_validate(json.loads(strip_code_fences(raw)))


async def call_json(
    client,
    *,
    model: str,
    system: str,
    user: str,
    schema: Type[M],
    reason: str,
    label: str,
    temperature: float = 0.3,
    max_tokens: int = 4096,
) -> M:
    """
    One validated request/response exchange with the chat model.

    Args:
        client: AsyncOpenAI-compatible client
        schema: pydantic model the response must satisfy
        reason: reason code used if the response stays malformed
        label: unit label for logs

    Raises:
        TransientRemoteError: timeout / 5xx / rate limit (retry at the call site)
        PermanentUnitError: malformed twice, or a non-retryable API error
    """
    messages: List[dict] = [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]
    last_error: Optional[Exception] = None

    for attempt in range(2):
        if attempt == 1:
            strict_schema = json.dumps(schema.model_json_schema())
            messages = [
                {"role": "system", "content": system + STRICT_SUFFIX + strict_schema},
                {"role": "user", "content": user},
            ]
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise from_remote_exception(e, reason=reason) from e

        raw = response.choices[0].message.content if response.choices else None
        try:
            return parse_payload(raw, schema)
        except (ValueError, ValidationError) as e:
            last_error = e
            logger.warning(f"[llm] {label}: malformed response (attempt {attempt + 1}/2): {str(e)[:200]}")

    raise PermanentUnitError(f"{label}: response failed validation twice ({last_error})", reason=reason)
