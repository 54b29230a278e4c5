"""
Text-to-speech backends.

Each backend takes text + voice id and returns audio bytes + duration.
Backend order (primary first, then fallbacks) comes from TTS_BACKENDS.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List

from config import settings
from workflow.errors import REASON_SYNTHESIS_FAILED, PermanentUnitError, from_remote_exception
from workflow.models import SPEAKER_A, SPEAKER_B

logger = logging.getLogger(__name__)


@dataclass
class SynthesizedAudio:
    audio: bytes
    duration_sec: float
    backend: str
    voice: str
    format: str = 'mp3'


def estimate_duration(text: str, wpm: int = settings.SCRIPT_WPM_ESTIMATE) -> float:
    return round(len(text.split()) / wpm * 60, 2)


class TTSBackend(ABC):
    """A text-to-speech service with one voice per speaker."""

    name = 'base'

    def __init__(self, voices: Dict[str, str]):
        self.voices = voices

    def voice_for(self, speaker: str) -> str:
        return self.voices.get(speaker) or self.voices[SPEAKER_A]

    @abstractmethod
    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio:
        """Raise TransientRemoteError for retryable failures, PermanentUnitError otherwise."""


class OpenAITTSBackend(TTSBackend):
    """OpenAI speech endpoint."""

    name = 'openai'

    def __init__(self, client, voices: Dict[str, str], model: str = settings.OPENAI_TTS_MODEL,
                 audio_format: str = settings.AUDIO_FORMAT):
        super().__init__(voices)
        self.client = client
        self.model = model
        self.audio_format = audio_format

    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio:
        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=voice,
                input=text,
                response_format=self.audio_format,
            )
        except Exception as e:
            raise from_remote_exception(e, reason=REASON_SYNTHESIS_FAILED) from e

        audio = response.content
        if not audio:
            raise PermanentUnitError("OpenAI TTS returned no audio", reason=REASON_SYNTHESIS_FAILED)
        # The speech endpoint does not report duration; the assembler measures the real track.
        return SynthesizedAudio(audio, estimate_duration(text), self.name, voice, self.audio_format)


class EdgeTTSBackend(TTSBackend):
    """Microsoft Edge read-aloud voices via edge-tts."""

    name = 'edge'

    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio:
        import edge_tts

        chunks: List[bytes] = []
        end_100ns = 0
        try:
            communicate = edge_tts.Communicate(text, voice)
            async for chunk in communicate.stream():
                if chunk['type'] == 'audio':
                    chunks.append(chunk['data'])
                elif chunk['type'] in ('WordBoundary', 'SentenceBoundary'):
                    end_100ns = max(end_100ns, chunk['offset'] + chunk['duration'])
        except edge_tts.exceptions.NoAudioReceived as e:
            raise PermanentUnitError(f"Edge TTS returned no audio: {e}", reason=REASON_SYNTHESIS_FAILED) from e
        except Exception as e:
            raise from_remote_exception(e, reason=REASON_SYNTHESIS_FAILED) from e

        audio = b''.join(chunks)
        if not audio:
            raise PermanentUnitError("Edge TTS returned no audio", reason=REASON_SYNTHESIS_FAILED)
        duration = end_100ns / 10_000_000 if end_100ns else estimate_duration(text)
        return SynthesizedAudio(audio, round(duration, 2), self.name, voice)


def build_backends(names: List[str], openai_client=None) -> List[TTSBackend]:
    """Instantiate backends in configured order; unknown names are skipped with a warning."""
    backends: List[TTSBackend] = []
    for name in (n.strip().lower() for n in names):
        if name == 'openai':
            if openai_client is None:
                logger.warning("[tts] openai backend configured without a client; skipping")
                continue
            backends.append(OpenAITTSBackend(openai_client, {SPEAKER_A: settings.VOX_A, SPEAKER_B: settings.VOX_B}))
        elif name == 'edge':
            backends.append(EdgeTTSBackend({SPEAKER_A: settings.EDGE_VOX_A, SPEAKER_B: settings.EDGE_VOX_B}))
        else:
            logger.warning(f"[tts] Unknown TTS backend: {name}")
    return backends
