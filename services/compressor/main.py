from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List

import uvicorn
from fastapi import FastAPI, HTTPException, Query

from .schemas import CeremonySummary, CycleEvent, CycleSession, StatusResp, SubmissionReq, SubmissionResp
from .scheduler import build_scheduler
from .settings import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()
scheduler = build_scheduler(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if settings.autostart:
        task = asyncio.create_task(scheduler.run_forever())
    try:
        yield
    finally:
        scheduler.stop()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


app = FastAPI(
    title="Token Compressor Lab",
    description="Discovers multi-token words, proposes compressions, and validates them into a shared codex.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/healthz")
def health():
    return {"status": "ok"}


@app.get("/status", response_model=StatusResp)
def status():
    return scheduler.status()


@app.post("/cycles", response_model=CycleSession)
async def start_cycle():
    session = await scheduler.run_cycle()
    if session is None:
        raise HTTPException(status_code=409, detail=f"Scheduler busy ({scheduler.state.value})")
    return session


@app.post("/ceremony", response_model=CeremonySummary)
async def start_ceremony():
    summary = await scheduler.run_ceremony()
    if summary is None:
        raise HTTPException(status_code=409, detail=f"Scheduler busy ({scheduler.state.value})")
    return summary


@app.post("/scheduler/pause")
def pause():
    scheduler.pause()
    return {"paused": True}


@app.post("/scheduler/resume")
def resume():
    scheduler.resume()
    return {"paused": False}


@app.get("/codex")
async def list_codex(limit: int = Query(100, ge=1, le=1000)):
    try:
        rows = await scheduler.datastore.list_approved_codex(limit)
    except Exception as e:
        logger.error(f"Codex listing failed: {e}")
        raise HTTPException(status_code=503, detail="Datastore unavailable")
    return [
        {
            "original": r.original,
            "compressed": r.compressed,
            "token_savings": r.token_savings,
            "source": r.source_label,
            "pattern_type": r.pattern_type.value,
        }
        for r in rows
    ]


@app.get("/patterns")
def list_patterns():
    return scheduler.patterns.summary()


@app.get("/sessions", response_model=List[CycleSession])
async def list_sessions(limit: int = Query(50, ge=1, le=500)):
    try:
        return await scheduler.datastore.list_sessions(limit)
    except Exception as e:
        logger.error(f"Session listing failed: {e}")
        raise HTTPException(status_code=503, detail="Datastore unavailable")


@app.get("/events", response_model=List[CycleEvent])
def recent_events(limit: int = Query(50, ge=1, le=200)):
    return scheduler.events.recent(limit)


@app.post("/submissions", response_model=SubmissionResp, status_code=201)
async def submit(req: SubmissionReq):
    try:
        sid = await scheduler.submit(req.original, req.compressed, req.name, req.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SubmissionResp(id=sid)


# --- Standalone Execution ---
if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")
    port = int(os.getenv("COMPRESSOR_PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
