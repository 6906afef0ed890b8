"""
Syntx Video Agent — main entry point.

Starts:
    • Structured JSON logging
    • SQLite DB init
    • Telegram user session (talks to the Syntx generation bot)
    • Job worker (background asyncio task)
    • Operator Telegram bot (long polling, optional)
    • FastAPI HTTP server (for /jobs REST API)
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

load_dotenv()  # must run before any module-level os.getenv() calls

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from agent.errors import (
    CapacityError,
    InvalidTransitionError,
    JobNotFoundError,
    PersistenceError,
)
from agent.syntx import close_transport, get_transport
from db.database import (
    delete_job,
    delete_job_cascade,
    get_job,
    init_db,
    list_active_jobs,
    list_jobs,
)
from bot.telegram_bot import TELEGRAM_BOT_TOKEN, create_bot_app
from workers.job_worker import (
    approve_job,
    reject_job,
    retry_job,
    submit_job,
    worker_loop,
)


# ── Structured JSON logging ────────────────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """One JSON object per log line — machine-readable and grep-friendly."""

    _SKIP = frozenset({
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        out: dict = {
            "ts":     self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.message,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        # Bubble up any extra= fields passed by callers
        for k, v in record.__dict__.items():
            if k not in self._SKIP:
                out[k] = v
        return json.dumps(out, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Keep uvicorn access logs readable but structured
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True
    # Telethon is chatty at INFO
    logging.getLogger("telethon").setLevel(logging.WARNING)


setup_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


# ── Lifespan ───────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("Database ready")

    # Fails fast with AuthenticationError if the user session was never created
    transport = await get_transport()
    worker_task = asyncio.create_task(worker_loop(transport))

    bot = None
    if TELEGRAM_BOT_TOKEN:
        bot = create_bot_app()
        await bot.initialize()
        await bot.start()
        await bot.updater.start_polling(drop_pending_updates=True)
        logger.info("Telegram bot polling started")
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set; operator bot disabled")

    yield

    logger.info("Shutting down")
    if bot is not None:
        await bot.updater.stop()
        await bot.stop()
        await bot.shutdown()
    worker_task.cancel()
    await close_transport()


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(title="Syntx Video Agent", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok"}


class CreateJobRequest(BaseModel):
    prompt: str = Field(min_length=1)
    video_title: str | None = None
    legacy: bool = False


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Job {job_id} not found")


@app.post("/jobs", status_code=201)
async def api_create_job(req: CreateJobRequest):
    try:
        job = await submit_job(req.prompt, legacy=req.legacy, video_title=req.video_title)
    except CapacityError as exc:
        raise HTTPException(status_code=429, detail=str(exc))
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"job_id": job.id, "status": job.status.value}


@app.get("/jobs")
async def api_list_jobs(active: bool = False):
    jobs = await list_active_jobs() if active else await list_jobs()
    return [job.to_dict() for job in jobs]


@app.get("/jobs/{job_id}")
async def api_get_job(job_id: str):
    job = await get_job(job_id)
    if not job:
        raise _not_found(job_id)
    return job.to_dict()


async def _run_action(action, job_id: str) -> dict:
    try:
        job = await action(job_id)
    except JobNotFoundError:
        raise _not_found(job_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return job.to_dict()


@app.post("/jobs/{job_id}/approve")
async def api_approve_job(job_id: str):
    return await _run_action(approve_job, job_id)


@app.post("/jobs/{job_id}/reject")
async def api_reject_job(job_id: str):
    return await _run_action(reject_job, job_id)


@app.post("/jobs/{job_id}/retry")
async def api_retry_job(job_id: str):
    return await _run_action(retry_job, job_id)


@app.delete("/jobs/{job_id}")
async def api_delete_job(job_id: str, cascade: bool = False):
    try:
        deleted = await (delete_job_cascade(job_id) if cascade else delete_job(job_id))
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    if not deleted:
        raise _not_found(job_id)
    return {"job_id": job_id, "deleted": True}


# ── Entry point ────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=False,
        log_config=None,   # let our handler take over
    )
