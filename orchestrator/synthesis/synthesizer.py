"""
Stage 5: Speech Synthesis

Synthesizes one script segment. The voice is chosen by speaker id; the
primary backend is tried under the shared retry policy first, and each
fallback backend only after the previous one is exhausted. When every
backend fails the segment is dropped from assembly; its index is kept so
later segments never shift.
"""

import logging
from typing import List

from synthesis.tts_backends import SynthesizedAudio, TTSBackend
from workflow.errors import REASON_SYNTHESIS_FAILED, PermanentUnitError, PipelineError
from workflow.models import ScriptSegment
from workflow.retry import RetryPolicy

logger = logging.getLogger(__name__)


class Synthesizer:

    def __init__(self, backends: List[TTSBackend], policy: RetryPolicy):
        if not backends:
            raise ValueError("At least one TTS backend is required")
        self.backends = backends
        self.policy = policy

    async def synthesize_segment(self, segment: ScriptSegment) -> SynthesizedAudio:
        """
        Raises:
            PermanentUnitError: every backend failed (reason 'synthesis-failed')
        """
        errors = []
        for backend in self.backends:
            voice = backend.voice_for(segment['speaker'])
            label = f"tts[{backend.name}] segment {segment['index']}"
            try:
                result = await self.policy.call(lambda: backend.synthesize(segment['text'], voice), label=label)
                logger.info(
                    f"[synthesizer] Segment {segment['index']} via {backend.name} "
                    f"({result.duration_sec:.1f}s, {len(result.audio)} bytes)"
                )
                return result
            except PipelineError as e:
                errors.append(f"{backend.name}: {e}")
                logger.warning(f"[synthesizer] {label} exhausted: {e}")

        raise PermanentUnitError(
            f"All TTS backends failed for segment {segment['index']}: {'; '.join(errors)}",
            reason=REASON_SYNTHESIS_FAILED,
        )
