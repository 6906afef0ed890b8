from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    WAITING_VIDEO = "waiting_video"
    DOWNLOADING = "downloading"
    READY = "ready"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    REJECTED = "rejected"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({JobStatus.UPLOADED, JobStatus.REJECTED, JobStatus.ERROR})

ACTIVE_STATUSES = frozenset({
    JobStatus.QUEUED,
    JobStatus.SENDING,
    JobStatus.WAITING_VIDEO,
    JobStatus.DOWNLOADING,
    JobStatus.UPLOADING,
})

# error is reachable from every non-terminal state and is added below
TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED:        frozenset({JobStatus.SENDING}),
    JobStatus.SENDING:       frozenset({JobStatus.WAITING_VIDEO}),
    JobStatus.WAITING_VIDEO: frozenset({JobStatus.DOWNLOADING}),
    JobStatus.DOWNLOADING:   frozenset({JobStatus.READY}),
    JobStatus.READY:         frozenset({JobStatus.UPLOADING, JobStatus.REJECTED}),
    JobStatus.UPLOADING:     frozenset({JobStatus.UPLOADED}),
    JobStatus.UPLOADED:      frozenset(),
    JobStatus.REJECTED:      frozenset(),
    JobStatus.ERROR:         frozenset(),
}
for _status, _targets in TRANSITIONS.items():
    if _status not in TERMINAL_STATUSES:
        TRANSITIONS[_status] = _targets | {JobStatus.ERROR}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class Job:
    id: str
    prompt: str
    status: JobStatus            # see JobStatus / TRANSITIONS
    legacy: bool = False         # reply-link / timestamp correlation, no marker
    video_title: Optional[str] = None
    request_message_id: Optional[int] = None
    video_message_id: Optional[int] = None
    local_artifact_path: Optional[str] = None
    storage_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        data = dict(row)
        data["status"] = JobStatus(data["status"])
        data["legacy"] = bool(data.get("legacy"))
        return cls(**data)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        out = asdict(self)
        out["status"] = self.status.value
        return out
