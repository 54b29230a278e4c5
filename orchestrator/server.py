# ./orchestrator/server.py
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import Depends, FastAPI, HTTPException, Path, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from run_daily import configure_logging
from workflow.orchestrator import RunLockedError, WorkflowOrchestrator
from workflow.run_state import RunStore

logger = logging.getLogger(__name__)

DATE_PATTERN = r'^\d{4}-\d{2}-\d{2}$'

bearer = HTTPBearer(auto_error=False)


def run_status(run) -> dict:
    return {
        "run_id": run["run_id"],
        "date": run["date"],
        "stage": run["stage"],
        "status": run["status"],
    }


def require_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
    if not settings.TRIGGER_TOKEN:
        raise HTTPException(status_code=403, detail="Manual trigger is disabled")
    if credentials is None or not secrets.compare_digest(credentials.credentials, settings.TRIGGER_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid token", headers={"WWW-Authenticate": "Bearer"})


def create_app(orchestrator: Optional[WorkflowOrchestrator] = None, schedule: bool = settings.SCHEDULE_ENABLED):

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.orchestrator is None:
            app.state.orchestrator = WorkflowOrchestrator()
        scheduler = None
        if schedule:
            scheduler = AsyncIOScheduler(timezone=settings.RUN_TIMEZONE)
            scheduler.add_job(
                scheduled_run,
                CronTrigger.from_crontab(settings.SCHEDULE_CRON, timezone=settings.RUN_TIMEZONE),
                args=[app],
                id="daily_run",
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info(f"[server] Daily run scheduled at '{settings.SCHEDULE_CRON}' ({settings.RUN_TIMEZONE})")
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)

    app = FastAPI(lifespan=lifespan)
    app.state.orchestrator = orchestrator

    def get_orchestrator(request: Request) -> WorkflowOrchestrator:
        return request.app.state.orchestrator

    @app.get("/")
    def health():
        return {"ok": True}

    @app.post("/run", status_code=202, dependencies=[Depends(require_token)])
    async def run(orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
        try:
            record = orchestrator.trigger(trigger='manual')
        except RunLockedError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return run_status(record)

    @app.get("/runs/{date}")
    def get_run(date: str = Path(pattern=DATE_PATTERN),
                orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
        record = RunStore(orchestrator.runs_dir, date).load()
        if record is None:
            raise HTTPException(status_code=404, detail=f"No run for {date}")
        return {**record, "active": orchestrator.is_active(date)}

    @app.get("/episodes")
    async def list_episodes(orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
        episodes = await orchestrator.deps.store.list()
        return [
            {
                "date": e["date"],
                "title": e["title"],
                "description": e["description"],
                "duration_sec": e.get("duration_sec"),
                "outcome": e.get("outcome"),
                "audio_key": e["audio_key"],
            }
            for e in episodes
        ]

    @app.get("/episodes/{date}")
    async def get_episode(date: str = Path(pattern=DATE_PATTERN),
                          orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
        episode = await orchestrator.deps.store.get(date)
        if episode is None:
            raise HTTPException(status_code=404, detail=f"No episode for {date}")
        return episode

    @app.get("/episodes/{date}/audio")
    async def get_episode_audio(date: str = Path(pattern=DATE_PATTERN),
                                orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)):
        store = orchestrator.deps.store
        audio = await store.get_audio(date)
        if audio is None:
            raise HTTPException(status_code=404, detail=f"No episode for {date}")
        media_type = "audio/mpeg" if store.audio_format == "mp3" else f"audio/{store.audio_format}"
        return Response(content=audio, media_type=media_type)

    return app


async def scheduled_run(app: FastAPI):
    try:
        record = app.state.orchestrator.trigger(trigger='schedule')
        logger.info(f"[server] Scheduled run {record['run_id']} is {record['stage']}")
    except RunLockedError as e:
        logger.warning(f"[server] Scheduled run skipped: {e}")


configure_logging()
app = create_app()
