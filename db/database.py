import os
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from agent.errors import ClaimConflictError, PersistenceError
from models.job import ACTIVE_STATUSES, Job, JobStatus

DB_PATH = os.getenv("DB_PATH", "video_jobs.db")

_CREATE_JOBS = """
CREATE TABLE IF NOT EXISTS jobs (
    id                  TEXT PRIMARY KEY,
    prompt              TEXT    NOT NULL,
    status              TEXT    NOT NULL DEFAULT 'queued',
    legacy              INTEGER NOT NULL DEFAULT 0,
    video_title         TEXT,
    request_message_id  INTEGER,
    video_message_id    INTEGER,
    local_artifact_path TEXT,
    storage_url         TEXT,
    error_message       TEXT,
    created_at          TEXT    NOT NULL,
    updated_at          TEXT    NOT NULL
)
"""

# One inbound video can back at most one job; NULLs are not compared
_CREATE_CLAIM_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS jobs_video_message_id
    ON jobs (video_message_id)
"""

_UPDATABLE = frozenset({
    "status", "request_message_id", "video_message_id", "local_artifact_path",
    "storage_url", "error_message",
})

# Set once, never rewritten with a different value
_WRITE_ONCE = ("request_message_id", "video_message_id")

_ACTIVE = tuple(s.value for s in ACTIVE_STATUSES)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex[:12]}"


async def init_db() -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(_CREATE_JOBS)
        await db.execute(_CREATE_CLAIM_INDEX)
        await db.commit()


# ── Jobs ──────────────────────────────────────────────────────────────────────

async def create_job(
    prompt: str,
    *,
    legacy: bool = False,
    video_title: str | None = None,
    job_id: str | None = None,
) -> Job:
    job_id = job_id or new_job_id()
    now = _now()
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            await db.execute(
                """
                INSERT INTO jobs (id, prompt, status, legacy, video_title, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (job_id, prompt, JobStatus.QUEUED.value, int(legacy), video_title, now, now),
            )
            await db.commit()
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not create job {job_id}: {exc}") from exc
    return Job(
        id=job_id,
        prompt=prompt,
        status=JobStatus.QUEUED,
        legacy=legacy,
        video_title=video_title,
        created_at=now,
        updated_at=now,
    )


async def get_job(job_id: str) -> Job | None:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            return Job.from_row(dict(row)) if row else None


async def update_job(job_id: str, **fields) -> Job:
    """
    Partially update a job and bump updated_at.

    Raises PersistenceError if the job does not exist, if a write-once field
    would change, or if video_message_id is already claimed by another job.
    """
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Not updatable: {sorted(unknown)}")
    if isinstance(fields.get("status"), JobStatus):
        fields["status"] = fields["status"].value

    try:
        async with aiosqlite.connect(DB_PATH) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
            if row is None:
                raise PersistenceError(f"Job {job_id} not found")
            current = dict(row)

            for col in _WRITE_ONCE:
                if col in fields and current[col] is not None and fields[col] != current[col]:
                    raise PersistenceError(
                        f"Job {job_id}: {col} already set to {current[col]}"
                    )

            # updated_at never moves backwards, even across a clock step
            updated_at = max(_now(), current["updated_at"])
            assignments = ", ".join(f"{col} = ?" for col in fields)
            await db.execute(
                f"UPDATE jobs SET {assignments}, updated_at = ? WHERE id = ?",
                (*fields.values(), updated_at, job_id),
            )
            await db.commit()
    except sqlite3.IntegrityError as exc:
        raise ClaimConflictError(
            f"Job {job_id}: video message {fields.get('video_message_id')} "
            f"is already claimed by another job"
        ) from exc
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not update job {job_id}: {exc}") from exc

    current.update(fields)
    current["updated_at"] = updated_at
    return Job.from_row(current)


async def delete_job(job_id: str) -> bool:
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            cur = await db.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
            await db.commit()
            return cur.rowcount > 0
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not delete job {job_id}: {exc}") from exc


async def delete_job_cascade(job_id: str) -> bool:
    """Delete the job and the downloaded artifact it owns."""
    job = await get_job(job_id)
    if job is None:
        return False
    if job.local_artifact_path:
        Path(job.local_artifact_path).unlink(missing_ok=True)
    return await delete_job(job_id)


async def list_jobs() -> list[Job]:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM jobs ORDER BY created_at DESC"
        ) as cur:
            return [Job.from_row(dict(r)) for r in await cur.fetchall()]


async def list_jobs_by_status(*statuses: JobStatus) -> list[Job]:
    if not statuses:
        return []
    placeholders = ", ".join("?" for _ in statuses)
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            f"SELECT * FROM jobs WHERE status IN ({placeholders}) ORDER BY created_at ASC",
            tuple(s.value for s in statuses),
        ) as cur:
            return [Job.from_row(dict(r)) for r in await cur.fetchall()]


async def list_active_jobs() -> list[Job]:
    return await list_jobs_by_status(*ACTIVE_STATUSES)


async def count_active_jobs() -> int:
    placeholders = ", ".join("?" for _ in _ACTIVE)
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(
            f"SELECT COUNT(*) FROM jobs WHERE status IN ({placeholders})", _ACTIVE
        ) as cur:
            (count,) = await cur.fetchone()
            return count


async def get_claimed_message_ids(exclude_job_id: str | None = None) -> set[int]:
    """Every inbound message id already attributed to a job other than *exclude_job_id*."""
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            async with db.execute(
                "SELECT video_message_id FROM jobs "
                "WHERE video_message_id IS NOT NULL AND id IS NOT ?",
                (exclude_job_id,),
            ) as cur:
                return {r[0] for r in await cur.fetchall()}
    except sqlite3.Error as exc:
        raise PersistenceError(f"Could not read claimed message ids: {exc}") from exc
