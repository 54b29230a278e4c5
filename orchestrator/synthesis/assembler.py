"""
Stage 6: Assembly (client side)

Audio concatenation runs in a separate rendering service with its own
environment (ffmpeg, pydub). This client sends the synthesized segments in
index order and receives one merged track plus its measured duration.

Contract (JSON over HTTP):
    POST <ASSEMBLER_URL>/render
    {"format": "mp3", "silence_ms": 350,
     "segments": [{"index": 0, "format": "mp3", "audio_b64": "..."}, ...]}
    -> 200 {"audio_b64": "...", "duration_sec": 512.3, "segment_count": 42}
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import List

import aiohttp

from config import settings
from workflow.errors import (
    REASON_ASSEMBLER_EXHAUSTED,
    PermanentUnitError,
    error_for_status,
    from_remote_exception,
)

logger = logging.getLogger(__name__)


@dataclass
class SegmentBuffer:
    index: int
    audio: bytes
    format: str = 'mp3'


@dataclass
class AssembledAudio:
    audio: bytes
    duration_sec: float
    segment_count: int


class AssemblerClient:

    def __init__(
        self,
        base_url: str = settings.ASSEMBLER_URL,
        timeout_sec: float = settings.ASSEMBLER_TIMEOUT_SEC,
        silence_ms: int = settings.SEGMENT_SILENCE_MS,
        audio_format: str = settings.AUDIO_FORMAT,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout_sec = timeout_sec
        self.silence_ms = silence_ms
        self.audio_format = audio_format

    async def assemble(self, segments: List[SegmentBuffer]) -> AssembledAudio:
        """
        Merge segments into one track. Segments must already be in index order;
        gaps left by dropped segments are simply absent.
        """
        if not segments:
            raise PermanentUnitError("Nothing to assemble", reason=REASON_ASSEMBLER_EXHAUSTED)
        indices = [s.index for s in segments]
        if indices != sorted(indices) or len(set(indices)) != len(indices):
            raise ValueError(f"Segments out of order: {indices}")

        request = {
            'format': self.audio_format,
            'silence_ms': self.silence_ms,
            'segments': [
                {'index': s.index, 'format': s.format, 'audio_b64': base64.b64encode(s.audio).decode('ascii')}
                for s in segments
            ],
        }
        url = f"{self.base_url}/render"
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=request) as response:
                    if response.status != 200:
                        detail = (await response.text())[:300]
                        logger.warning(f"[assembler] HTTP {response.status} from render service: {detail}")
                        raise error_for_status(response.status, url, reason=REASON_ASSEMBLER_EXHAUSTED)
                    body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise from_remote_exception(e, reason=REASON_ASSEMBLER_EXHAUSTED) from e
        except ValueError as e:
            raise PermanentUnitError(f"Malformed JSON from {url}: {e}", reason=REASON_ASSEMBLER_EXHAUSTED) from e

        try:
            audio = base64.b64decode(body['audio_b64'], validate=True)
            duration_sec = float(body['duration_sec'])
            segment_count = int(body.get('segment_count', len(segments)))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise PermanentUnitError(
                f"Render service reply is missing or has a bad field: {e!r}", reason=REASON_ASSEMBLER_EXHAUSTED
            ) from e
        logger.info(
            f"[assembler] Merged {segment_count} segments into {duration_sec:.1f}s ({len(audio)} bytes)"
        )
        return AssembledAudio(audio=audio, duration_sec=duration_sec, segment_count=segment_count)
