"""
Synthesis package for the audio stages.

Provides:
- Text-to-speech backends with per-speaker voices (tts_backends)
- Per-segment synthesis with backend fallback (synthesizer)
- Client for the isolated rendering service (assembler)
- The rendering service itself, deployed separately (render_service)
"""
