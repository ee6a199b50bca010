from __future__ import annotations
from typing import Annotated, Optional

from fastapi import FastAPI, Depends, Query, Request
from fastapi.responses import ORJSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .errors import EngineError
from .models import Job, OrgConfigRequest, RunRequest
from .runtime import Engine, build_engine
from .logging_config import logger

VERSION = "0.1.0"


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


EngineDep = Annotated[Engine, Depends(get_engine)]


def _submit(engine: Engine, job: Job):
    try:
        outcome = engine.router.submit(job)
    except EngineError as e:
        return ORJSONResponse(status_code=500, content={"success": False, "job_id": job.id, "error": str(e)})
    except Exception as e:
        logger.exception(f"Job {job.id} submission crashed")
        return ORJSONResponse(status_code=500, content={"success": False, "job_id": job.id, "error": str(e)})
    if outcome.queued:
        return {"success": True, "job_id": outcome.job_id, "mode": outcome.mode, "queued": True}
    return {"success": True, "job_id": outcome.job_id, "mode": outcome.mode, "result": outcome.result.to_dict()}


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """Build the API. Without an engine, one is built from settings at startup."""
    app = FastAPI(title="Remote Shell Runner API", version=VERSION, default_response_class=ORJSONResponse)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine

    @app.on_event("startup")
    async def on_startup():
        logger.info(f"Starting Remote Shell Runner API v{VERSION}")
        logger.info(f"SHELL_EXECUTABLE: {settings.SHELL_EXECUTABLE}")
        logger.info(f"AUDIT_DB_PATH: {settings.AUDIT_DB_PATH}")
        logger.info(f"QUEUE_CONFIGURED: {settings.queue_url is not None}")
        if app.state.engine is None:
            app.state.engine = build_engine(settings)
        app.state.engine.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.engine is not None:
            app.state.engine.stop()

    @app.get("/health")
    async def health(engine: EngineDep):
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": VERSION,
            "mode": engine.router.mode,
            "queue_available": engine.queue_available,
            "session_state": engine.sessions.state.value,
        }

    # plain def: FastAPI runs it on the threadpool, so blocking on the session is fine
    @app.post("/jobs/run")
    def run_job(body: RunRequest, engine: EngineDep):
        job = Job(action=body.action, params=body.params, credentials=body.credentials)
        logger.info(f"Run request {job.id}: {job.action} (mode={engine.router.mode})")
        return _submit(engine, job)

    @app.post("/jobs/org-config")
    def org_config(engine: EngineDep, body: Optional[OrgConfigRequest] = None):
        job = Job(action="Get-OrganizationConfig", credentials=body.credentials if body else None)
        return _submit(engine, job)

    @app.get("/jobs/peek")
    async def peek(engine: EngineDep):
        return engine.sessions.peek()

    @app.post("/jobs/reset")
    async def reset(engine: EngineDep):
        engine.sessions.reset()
        return {"success": True, "message": "Session reset"}

    @app.get("/audits")
    async def audits(engine: EngineDep, limit: Annotated[Optional[int], Query(ge=1)] = None):
        limit = min(limit or settings.DEFAULT_AUDIT_LIMIT, settings.MAX_AUDIT_LIMIT)
        rows = engine.audits.list_audits(limit)
        return {"success": True, "audits": [r.to_dict() for r in rows]}

    @app.get("/audits/{job_id}")
    async def job_audits(job_id: str, engine: EngineDep):
        rows = engine.audits.list_for_job(job_id)
        return {"success": True, "audits": [r.to_dict() for r in rows]}

    return app


app = create_app()
