"""
Job lifecycle controller and background worker.

    queued → sending → waiting_video → downloading → ready → uploading → uploaded
                                                     ready → rejected
    any non-terminal state → error

- process_job()        send the prompt, wait for the video, download it.
- approve_job()        hand a ready video to the storage collaborator.
- reject_job()         mark a ready video as rejected.
- retry_job()          operator-initiated retry of a failed job.
- submit_job()         create and schedule a job, capped at MAX_ACTIVE_JOBS.
- worker_loop()        polls SQLite for 'queued' jobs every WORKER_INTERVAL s.
- register_callback()  lets the Telegram bot register a coroutine fired when
                       a job reaches 'ready' or 'error'.

Callback signature:
    async def cb(job: Job) -> None

Failures are never retried automatically: every step catches its error,
stores the message on the job and moves it to 'error'.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Awaitable, Callable

from agent import marker
from agent.archive import ArtifactStorage, LocalArchiveStorage
from agent.correlation import SYNTX_BOT_USERNAME, VideoCorrelator
from agent.errors import (
    AuthenticationError,
    CapacityError,
    ClaimConflictError,
    DownloadError,
    EmptyPayloadError,
    InvalidTransitionError,
    JobNotFoundError,
    VideoJobError,
)
from agent.syntx import get_transport
from db.database import (
    count_active_jobs,
    create_job,
    get_claimed_message_ids,
    get_job,
    list_jobs_by_status,
    update_job,
)
from models.job import Job, JobStatus, can_transition
from models.message import ChatMessage

logger = logging.getLogger(__name__)

DOWNLOAD_DIR: str = os.getenv("DOWNLOAD_DIR", "downloads")
MAX_CONCURRENT_JOBS: int = int(os.getenv("MAX_CONCURRENT_JOBS", "5"))
MAX_ACTIVE_JOBS: int = int(os.getenv("MAX_ACTIVE_JOBS", "20"))
WORKER_INTERVAL: float = float(os.getenv("WORKER_INTERVAL", "3"))

Callback = Callable[[Job], Awaitable[None]]

_callbacks: dict[str, Callback] = {}


def register_callback(job_id: str, cb: Callback) -> None:
    _callbacks[job_id] = cb


async def _fire(job: Job) -> None:
    cb = _callbacks.pop(job.id, None)
    if cb:
        try:
            await cb(job)
        except Exception as exc:
            logger.error("Callback error", extra={"job_id": job.id, "error": str(exc)})


# ── State helpers ──────────────────────────────────────────────────────────────

async def _require(job_id: str) -> Job:
    job = await get_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def _transition(job: Job, target: JobStatus, **fields) -> Job:
    if not can_transition(job.status, target):
        raise InvalidTransitionError(job.id, job.status.value, target.value)
    updated = await update_job(job.id, status=target, **fields)
    logger.info(
        "Job %s → %s", job.status.value, target.value,
        extra={"job_id": job.id, **{k: v for k, v in fields.items() if v is not None}},
    )
    return updated


async def _fail(job: Job, exc: BaseException) -> Job:
    """Record *exc* on the job and move it to 'error'. PersistenceError propagates."""
    message = str(exc) or exc.__class__.__name__
    if not can_transition(job.status, JobStatus.ERROR):
        logger.error(
            "Failure on terminal job",
            extra={"job_id": job.id, "status": job.status.value, "error": message},
        )
        return job
    return await update_job(job.id, status=JobStatus.ERROR, error_message=message)


def _slugify(title: str) -> str:
    slug = re.sub(r"[^\w-]+", "_", title.strip().lower(), flags=re.UNICODE)
    return slug.strip("_")[:60]


def artifact_path(job: Job) -> Path:
    name = f"{job.id}.mp4"
    if job.video_title and _slugify(job.video_title):
        name = f"{_slugify(job.video_title)}_{name}"
    return Path(DOWNLOAD_DIR).resolve() / name


def _verify_artifact(path: Path) -> None:
    if not path.is_file():
        raise DownloadError(f"File was not created at {path}")
    if path.stat().st_size == 0:
        raise EmptyPayloadError(f"Downloaded file {path} has size 0 bytes")


# ── Steps ──────────────────────────────────────────────────────────────────────

async def _send_prompt(job: Job, transport) -> Job:
    job = await _transition(job, JobStatus.SENDING)
    text = job.prompt if job.legacy else marker.embed(job.prompt, job.id)
    message_id = await transport.send(SYNTX_BOT_USERNAME, text)
    return await _transition(job, JobStatus.WAITING_VIDEO, request_message_id=message_id)


async def download_video(transport, message: ChatMessage, dest: Path) -> Path:
    """
    Download *message*'s payload to *dest*, first streaming to file and then,
    if that fails or yields nothing, through an in-memory buffer.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)

    try:
        written = await transport.download_to_file(message, dest)
        _verify_artifact(Path(written))
        return Path(written)
    except AuthenticationError:
        raise
    except Exception as exc:
        file_error = exc
        logger.warning(
            "File-mode download failed, trying buffer mode",
            extra={"message_id": message.id, "error": str(exc)},
        )

    try:
        data = await transport.download_bytes(message)
        if not data:
            raise EmptyPayloadError("Buffer download returned no bytes")
        dest.write_bytes(data)
        _verify_artifact(dest)
    except AuthenticationError:
        raise
    except Exception as exc:
        dest.unlink(missing_ok=True)
        raise DownloadError(
            f"Failed to download media: {file_error}. Buffer mode also failed: {exc}"
        ) from exc

    logger.info("Video saved (buffer mode)", extra={"message_id": message.id, "path": str(dest)})
    return dest


async def process_job(job: Job, transport=None, correlator: VideoCorrelator | None = None) -> Job:
    """
    Drive *job* from 'queued' (or a resumed 'waiting_video') to 'ready'.
    Returns the job as persisted at the end of the run.
    """
    if job.status not in (JobStatus.QUEUED, JobStatus.WAITING_VIDEO):
        logger.warning(
            "Job not runnable", extra={"job_id": job.id, "status": job.status.value}
        )
        return job

    logger.info("Job started", extra={"job_id": job.id, "legacy": job.legacy})
    try:
        if transport is None:
            transport = await get_transport()
        if correlator is None:
            correlator = VideoCorrelator(transport, get_claimed_message_ids)

        if job.status is JobStatus.QUEUED:
            job = await _send_prompt(job, transport)

        started = correlator.clock()
        while True:
            match = await correlator.wait_for_video(
                job.id, job.request_message_id, legacy=job.legacy, started_at=started
            )
            # The claim is persisted before anything else happens with the video
            try:
                job = await _transition(
                    job, JobStatus.DOWNLOADING, video_message_id=match.message.id
                )
                break
            except ClaimConflictError:
                # Lost the race; the next scan excludes the other job's claim
                logger.info(
                    "Video claimed by another job, waiting again",
                    extra={"job_id": job.id, "message_id": match.message.id},
                )

        path = await download_video(transport, match.message, artifact_path(job))
        job = await _transition(job, JobStatus.READY, local_artifact_path=str(path))
        logger.info(
            "Job ready",
            extra={"job_id": job.id, "path": str(path), "size": path.stat().st_size,
                   "strategy": match.strategy.value},
        )

    except AuthenticationError as exc:
        logger.error("Telegram session not authorized", extra={"job_id": job.id})
        job = await _fail(job, exc)
    except VideoJobError as exc:
        logger.warning("Job failed", extra={"job_id": job.id, "error": str(exc)})
        job = await _fail(job, exc)
    except Exception as exc:
        logger.error("Job failed", extra={"job_id": job.id, "error": str(exc)}, exc_info=True)
        job = await _fail(job, exc)

    await _fire(job)
    return job


async def approve_job(job_id: str, storage: ArtifactStorage | None = None) -> Job:
    """Upload a 'ready' video. Raises InvalidTransitionError for other states."""
    job = await _require(job_id)
    job = await _transition(job, JobStatus.UPLOADING)
    storage = storage or LocalArchiveStorage()
    try:
        url = await storage.store(Path(job.local_artifact_path or ""), job)
    except Exception as exc:
        logger.error("Upload failed", extra={"job_id": job.id, "error": str(exc)}, exc_info=True)
        return await _fail(job, exc)
    return await _transition(job, JobStatus.UPLOADED, storage_url=url)


async def reject_job(job_id: str) -> Job:
    job = await _require(job_id)
    return await _transition(job, JobStatus.REJECTED)


async def retry_job(job_id: str) -> Job:
    """
    Retry a job in 'error'.

    Legacy jobs that already sent their prompt wait again on the same job id
    without re-sending. Every other job is re-created under a new id, since a
    marker names exactly one job.
    """
    job = await _require(job_id)
    if job.status is not JobStatus.ERROR:
        raise InvalidTransitionError(job.id, job.status.value, "retry")

    if job.legacy and job.request_message_id is not None:
        job = await update_job(job.id, status=JobStatus.WAITING_VIDEO, error_message=None)
        logger.info("Legacy job re-armed", extra={"job_id": job.id})
        schedule_job(job)
        return job

    new_job = await create_job(job.prompt, legacy=job.legacy, video_title=job.video_title)
    logger.info("Job re-created", extra={"job_id": new_job.id, "retry_of": job.id})
    schedule_job(new_job)
    return new_job


# ── Scheduling ─────────────────────────────────────────────────────────────────

_running: set[str] = set()


def schedule_job(job: Job, transport=None) -> bool:
    """
    Start a job task, guarded by _running to prevent duplicate execution.
    Returns False when the concurrency limit is reached; the job stays queued.
    """
    if job.id in _running:
        return True
    if len(_running) >= MAX_CONCURRENT_JOBS:
        return False
    _running.add(job.id)

    async def _run() -> None:
        try:
            await process_job(job, transport)
        except Exception as exc:
            logger.error("Job task crashed", extra={"job_id": job.id, "error": str(exc)},
                         exc_info=True)
        finally:
            _running.discard(job.id)

    asyncio.create_task(_run())
    return True


async def submit_job(
    prompt: str,
    *,
    legacy: bool = False,
    video_title: str | None = None,
    on_done: Callback | None = None,
) -> Job:
    """
    Create and schedule a new job. Raises CapacityError when MAX_ACTIVE_JOBS
    jobs are already in flight; no row is created in that case.
    """
    active = await count_active_jobs()
    if active >= MAX_ACTIVE_JOBS:
        logger.warning("Job refused, too many active jobs", extra={"active": active})
        raise CapacityError(f"Too many active jobs ({active}), try again later")

    job = await create_job(prompt, legacy=legacy, video_title=video_title)
    if on_done is not None:
        register_callback(job.id, on_done)
    schedule_job(job)
    return job


async def recover_interrupted_jobs(transport=None) -> None:
    """Resume jobs a previous process left mid-flight."""
    for job in await list_jobs_by_status(JobStatus.SENDING):
        # Unknown whether the prompt went out; re-sending could produce a second video
        await update_job(
            job.id,
            status=JobStatus.ERROR,
            error_message="Interrupted while sending the prompt; retry to send again",
        )
        logger.warning("Interrupted send marked as error", extra={"job_id": job.id})

    for job in await list_jobs_by_status(JobStatus.UPLOADING):
        await update_job(job.id, status=JobStatus.READY)
        logger.warning("Interrupted upload returned to ready", extra={"job_id": job.id})

    for job in await list_jobs_by_status(JobStatus.WAITING_VIDEO, JobStatus.DOWNLOADING):
        if job.status is JobStatus.DOWNLOADING:
            # Its own video is excluded from the claimed set, so the wait finds it again
            job = await update_job(job.id, status=JobStatus.WAITING_VIDEO)
        logger.info("Resuming wait", extra={"job_id": job.id})
        schedule_job(job, transport)


async def worker_loop(transport=None) -> None:
    logger.info("Job worker started")
    try:
        await recover_interrupted_jobs(transport)
    except Exception as exc:
        logger.error("Recovery failed", extra={"error": str(exc)}, exc_info=True)

    while True:
        try:
            for job in await list_jobs_by_status(JobStatus.QUEUED):
                if not schedule_job(job, transport):
                    break
        except Exception as exc:
            logger.error("worker_loop error", extra={"error": str(exc)}, exc_info=True)

        await asyncio.sleep(WORKER_INTERVAL)
