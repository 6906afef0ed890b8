"""
Error taxonomy for the Syntx video pipeline.

    AuthenticationError     chat session invalid — fatal, needs operator login
    TransportError          transient chat transport failure (poll loop retries)
    PeerUnavailableError    agent identity could not be resolved (transient)
    NoMatchTimeoutError     wait budget spent without a matching video
    EmptyPayloadError       downloaded artifact has zero size
    DownloadError           both transfer modes failed
    PersistenceError        job store read/write failed
    ClaimConflictError      video already claimed by another job (a PersistenceError)
    InvalidTransitionError  lifecycle transition not allowed from current state
    JobNotFoundError        no job with the given id
    CapacityError           too many active jobs to accept a new one
"""


class VideoJobError(Exception):
    """Base class for every error raised by the pipeline."""


class AuthenticationError(VideoJobError):
    """Raised when the Telegram user session is not authorized."""


class TransportError(VideoJobError):
    """Raised for transport failures that may succeed on a later attempt."""


class PeerUnavailableError(TransportError):
    """Raised when the generation agent's chat entity cannot be resolved."""


class NoMatchTimeoutError(VideoJobError):
    def __init__(self, job_id: str, elapsed: float) -> None:
        self.job_id = job_id
        self.elapsed = elapsed
        super().__init__(
            f"Timed out waiting for video for job {job_id} after {elapsed:.0f}s"
        )


class EmptyPayloadError(VideoJobError):
    """Raised when a download produced no bytes."""


class DownloadError(VideoJobError):
    """Raised when both transfer modes failed to produce a usable file."""


class PersistenceError(VideoJobError):
    """Raised when the job store rejects or fails a write."""


class InvalidTransitionError(VideoJobError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class JobNotFoundError(VideoJobError):
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class ClaimConflictError(PersistenceError):
    """Raised when another job persisted the same video_message_id first."""


class CapacityError(VideoJobError):
    """Raised when a new job would exceed the active-job cap."""
