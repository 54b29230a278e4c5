# ./orchestrator/synthesis/render_service.py
"""
Isolated audio rendering service.

Runs in its own container with ffmpeg available, separate from the
orchestrator:

    uvicorn synthesis.render_service:app --port 8090

Concatenates ordered audio buffers with fixed silence between them and
reports the measured duration of the merged track.
"""

import base64
import io
import logging
from typing import List

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from pydub import AudioSegment

logger = logging.getLogger(__name__)

app = FastAPI()


class RenderSegment(BaseModel):
    index: int = Field(ge=0)
    format: str = 'mp3'
    audio_b64: str


class RenderRequest(BaseModel):
    format: str = 'mp3'
    silence_ms: int = Field(default=350, ge=0)
    segments: List[RenderSegment] = Field(min_length=1)


class RenderResponse(BaseModel):
    audio_b64: str
    duration_sec: float
    segment_count: int


def render(request: RenderRequest) -> RenderResponse:
    indices = [s.index for s in request.segments]
    if indices != sorted(set(indices)):
        raise ValueError(f"segments must be strictly increasing by index, got {indices}")

    silence = AudioSegment.silent(duration=request.silence_ms)
    combined = AudioSegment.empty()
    for position, segment in enumerate(request.segments):
        audio = AudioSegment.from_file(io.BytesIO(base64.b64decode(segment.audio_b64)), format=segment.format)
        if position > 0:
            combined += silence
        combined += audio

    out = io.BytesIO()
    export_args = {'bitrate': '128k'} if request.format == 'mp3' else {}
    combined.export(out, format=request.format, **export_args)
    duration = round(len(combined) / 1000.0, 2)
    logger.info(f"[render] Merged {len(request.segments)} segments into {duration}s")
    return RenderResponse(
        audio_b64=base64.b64encode(out.getvalue()).decode('ascii'),
        duration_sec=duration,
        segment_count=len(request.segments),
    )


@app.get("/")
def health():
    return {"ok": True}


@app.post("/render", response_model=RenderResponse)
def render_endpoint(request: RenderRequest):
    try:
        return render(request)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
