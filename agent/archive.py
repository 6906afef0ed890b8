"""
Storage collaborator for approved videos.

Approved artifacts are copied into ARCHIVE_DIR, which is expected to be a
synced folder (Drive, Dropbox, a NAS mount). Anything exposing the same
`store(path, job)` coroutine can replace it.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Protocol

from agent.errors import EmptyPayloadError
from models.job import Job

logger = logging.getLogger(__name__)

ARCHIVE_DIR: str = os.getenv("ARCHIVE_DIR", "archive")


class ArtifactStorage(Protocol):
    async def store(self, path: Path, job: Job) -> str:
        ...


class LocalArchiveStorage:
    def __init__(self, root: str | Path = ARCHIVE_DIR) -> None:
        self.root = Path(root)

    async def store(self, path: Path, job: Job) -> str:
        """Copy *path* into the archive and return its file:// URL."""
        path = Path(path)
        if not path.is_file() or path.stat().st_size == 0:
            raise EmptyPayloadError(f"Artifact for job {job.id} is missing or empty: {path}")

        dest = self.root / path.name
        await asyncio.to_thread(self._copy, path, dest)
        logger.info("Artifact archived", extra={"job_id": job.id, "dest": str(dest)})
        return dest.resolve().as_uri()

    @staticmethod
    def _copy(src: Path, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)
