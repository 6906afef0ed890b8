from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from agent.correlation import VideoCorrelator
from agent.errors import AuthenticationError, CapacityError, InvalidTransitionError, TransportError
from agent.marker import embed, extract
from conftest import AGENT, NOW, FakeClock, FakeTransport
from db import database
from models.job import Job, JobStatus
from models.message import PayloadKind
from workers import job_worker

pytestmark = pytest.mark.anyio


def _correlator(transport: FakeTransport, clock: FakeClock | None = None, max_wait: float = 60) -> VideoCorrelator:
    clock = clock or FakeClock()
    return VideoCorrelator(
        transport,
        database.get_claimed_message_ids,
        agent_username=AGENT,
        poll_interval=10,
        max_wait=max_wait,
        clock=clock,
        sleep=clock.sleep,
        now=lambda: NOW,
    )


def _agent_replies_with_video(transport: FakeTransport, data: bytes = b"mp4-bytes"):
    """Simulate the agent echoing the prompt (marker included) in its video caption."""

    def on_send(request) -> None:
        transport.add_message(f"Done!\n{request.text}", age=timedelta(seconds=1), data=data)

    return on_send


class RecordingStorage:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.stored: list[tuple[Path, str]] = []

    async def store(self, path: Path, job: Job) -> str:
        if self.fail:
            raise OSError("disk full")
        self.stored.append((path, job.id))
        return f"file:///archive/{path.name}"


# ── process_job ────────────────────────────────────────────────────────────────

async def test_job_runs_to_ready(db_path, download_dir, transport) -> None:
    transport.on_send = _agent_replies_with_video(transport)
    job = await database.create_job("a cat surfing", video_title="Surf Cat")

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert done.status is JobStatus.READY
    peer, text = transport.sent[0]
    assert peer == AGENT
    assert text.startswith("a cat surfing")
    assert extract(text) == job.id

    stored = await database.get_job(job.id)
    assert stored.status is JobStatus.READY
    assert stored.prompt == "a cat surfing"
    assert stored.request_message_id is not None
    assert stored.video_message_id is not None
    assert stored.video_message_id != stored.request_message_id
    path = Path(stored.local_artifact_path)
    assert path.parent == download_dir.resolve()
    assert path.name == f"surf_cat_{job.id}.mp4"
    assert path.stat().st_size > 0
    assert stored.error_message is None


async def test_legacy_job_sends_prompt_without_marker(db_path, download_dir, transport) -> None:
    def on_send(request) -> None:
        transport.add_message("Here is your video", reply_to=request.id)

    transport.on_send = on_send
    job = await database.create_job("a cat surfing", legacy=True)

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert transport.sent[0][1] == "a cat surfing"
    assert done.status is JobStatus.READY


async def test_send_failure_moves_job_to_error(db_path, download_dir, transport) -> None:
    transport.send_error = TransportError("flood wait")
    job = await database.create_job("p")

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert done.status is JobStatus.ERROR
    assert "flood wait" in done.error_message
    assert (await database.get_job(job.id)).request_message_id is None


async def test_authentication_failure_moves_job_to_error(db_path, download_dir, transport) -> None:
    transport.send_error = AuthenticationError("session revoked")
    job = await database.create_job("p")

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert done.status is JobStatus.ERROR
    assert done.error_message == "session revoked"


async def test_timeout_moves_job_to_error(db_path, download_dir, transport) -> None:
    job = await database.create_job("p")

    done = await job_worker.process_job(job, transport, _correlator(transport, max_wait=20))

    assert done.status is JobStatus.ERROR
    assert job.id in done.error_message
    assert done.request_message_id is not None
    assert done.video_message_id is None


async def test_buffer_mode_used_when_file_mode_fails(db_path, download_dir, transport) -> None:
    transport.on_send = _agent_replies_with_video(transport)
    transport.file_mode_error = TransportError("FILE_REFERENCE_EXPIRED")
    job = await database.create_job("p")

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert done.status is JobStatus.READY
    assert Path(done.local_artifact_path).read_bytes() == b"mp4-bytes"


async def test_empty_payload_in_both_modes_is_an_error(db_path, download_dir, transport) -> None:
    transport.on_send = _agent_replies_with_video(transport, data=b"")
    job = await database.create_job("p")

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert done.status is JobStatus.ERROR
    assert "Buffer mode also failed" in done.error_message
    assert done.local_artifact_path is None
    # the claim stays with the job that matched it
    assert done.video_message_id is not None


async def test_callback_fires_on_completion(db_path, download_dir, transport) -> None:
    transport.on_send = _agent_replies_with_video(transport)
    job = await database.create_job("p")
    seen: list[Job] = []

    async def cb(finished: Job) -> None:
        seen.append(finished)

    job_worker.register_callback(job.id, cb)
    await job_worker.process_job(job, transport, _correlator(transport))

    assert [j.status for j in seen] == [JobStatus.READY]


async def test_non_runnable_job_is_left_alone(db_path, download_dir, transport) -> None:
    job = await database.create_job("p")
    job = await database.update_job(job.id, status=JobStatus.READY)

    result = await job_worker.process_job(job, transport, _correlator(transport))

    assert result.status is JobStatus.READY
    assert transport.sent == []


# ── Dedup across concurrent jobs ───────────────────────────────────────────────

async def test_only_the_marked_job_claims_the_video(db_path, download_dir, transport) -> None:
    a = await database.create_job("video a")
    b = await database.create_job("video b")

    def on_send(request) -> None:
        # the agent only ever answers job A
        if extract(request.text) == a.id:
            transport.add_message(f"Done!\n{request.text}")

    transport.on_send = on_send

    done_a, done_b = await asyncio.gather(
        job_worker.process_job(a, transport, _correlator(transport, max_wait=40)),
        job_worker.process_job(b, transport, _correlator(transport, max_wait=40)),
    )

    assert done_a.status is JobStatus.READY
    assert done_b.status is JobStatus.ERROR
    assert done_b.video_message_id is None
    # B kept polling for its whole budget
    assert transport.list_calls >= 1 + 4


async def test_concurrent_legacy_waits_never_share_a_video(db_path, download_dir, transport) -> None:
    jobs = [await database.create_job(f"legacy {i}", legacy=True) for i in range(3)]

    def on_send(request) -> None:
        if len(transport.sent) == 3:
            # one unlinked video for three waiting legacy jobs
            transport.add_message("your video", age=timedelta(seconds=1))

    transport.on_send = on_send

    results = await asyncio.gather(*(
        job_worker.process_job(j, transport, _correlator(transport, max_wait=30)) for j in jobs
    ))

    claimed = [r.video_message_id for r in results if r.video_message_id is not None]
    assert len(claimed) == 1
    assert sum(r.status is JobStatus.READY for r in results) == 1
    # the others kept waiting for a video of their own until their budget ran out
    losers = [r for r in results if r.status is not JobStatus.READY]
    assert all(r.status is JobStatus.ERROR for r in losers)
    assert all(r.error_message.startswith("Timed out") for r in losers)


class GatedTransport(FakeTransport):
    """Holds the first *parties* scans until all of them have read the history."""

    def __init__(self, parties: int) -> None:
        super().__init__()
        self.parties = parties
        self.arrived = 0
        self.all_arrived = asyncio.Event()
        self.after_gate = None

    async def list_recent(self, peer: str, limit: int):
        snapshot = await super().list_recent(peer, limit)
        if self.arrived < self.parties:
            self.arrived += 1
            if self.arrived == self.parties:
                self.all_arrived.set()
                if self.after_gate is not None:
                    self.after_gate()
            await self.all_arrived.wait()
        return snapshot


async def test_losing_a_claim_race_keeps_waiting_and_matches_a_later_video(
    db_path, download_dir
) -> None:
    transport = GatedTransport(parties=2)
    jobs = []
    for i in range(2):
        job = await database.create_job(f"legacy {i}", legacy=True)
        jobs.append(await database.update_job(
            job.id, status=JobStatus.WAITING_VIDEO, request_message_id=100
        ))
    first = transport.add_message("your video", age=timedelta(seconds=5))
    later = []
    # both scans already hold a history with only the first video
    transport.after_gate = lambda: later.append(
        transport.add_message("another video", age=timedelta(seconds=1))
    )
    clocks = [FakeClock(), FakeClock()]

    results = await asyncio.gather(*(
        job_worker.process_job(j, transport, _correlator(transport, c, max_wait=120))
        for j, c in zip(jobs, clocks)
    ))

    assert [r.status for r in results] == [JobStatus.READY, JobStatus.READY]
    assert sorted(r.video_message_id for r in results) == [first.id, later[0].id]
    # the loser rescanned right away instead of sleeping or failing
    assert clocks[0].sleeps == [] and clocks[1].sleeps == []


# ── submit_job ─────────────────────────────────────────────────────────────────

async def test_submit_job_counts_only_active_jobs(db_path, monkeypatch) -> None:
    monkeypatch.setattr(job_worker, "MAX_ACTIVE_JOBS", 1)
    monkeypatch.setattr(job_worker, "schedule_job", lambda job, transport=None: True)
    failed = await database.create_job("old")
    await database.update_job(failed.id, status=JobStatus.ERROR, error_message="timeout")

    job = await job_worker.submit_job("new", legacy=True)

    assert job.legacy is True
    with pytest.raises(CapacityError):
        await job_worker.submit_job("one too many")
    assert len(await database.list_jobs()) == 2


# ── approve / reject / retry ───────────────────────────────────────────────────

async def _ready_job(transport: FakeTransport) -> Job:
    transport.on_send = _agent_replies_with_video(transport)
    job = await database.create_job("p")
    return await job_worker.process_job(job, transport, _correlator(transport))


async def test_approve_uploads_ready_video(db_path, download_dir, transport) -> None:
    job = await _ready_job(transport)
    storage = RecordingStorage()

    done = await job_worker.approve_job(job.id, storage)

    assert done.status is JobStatus.UPLOADED
    assert done.storage_url.endswith(".mp4")
    assert storage.stored == [(Path(job.local_artifact_path), job.id)]


async def test_upload_failure_moves_job_to_error(db_path, download_dir, transport) -> None:
    job = await _ready_job(transport)

    done = await job_worker.approve_job(job.id, RecordingStorage(fail=True))

    assert done.status is JobStatus.ERROR
    assert done.error_message == "disk full"


async def test_reject_ready_video(db_path, download_dir, transport) -> None:
    job = await _ready_job(transport)

    done = await job_worker.reject_job(job.id)

    assert done.status is JobStatus.REJECTED
    with pytest.raises(InvalidTransitionError):
        await job_worker.approve_job(job.id, RecordingStorage())


async def test_cannot_approve_job_that_is_not_ready(db_path) -> None:
    job = await database.create_job("p")

    with pytest.raises(InvalidTransitionError):
        await job_worker.approve_job(job.id, RecordingStorage())
    with pytest.raises(InvalidTransitionError):
        await job_worker.reject_job(job.id)


async def test_retry_recreates_marker_job(db_path, monkeypatch) -> None:
    scheduled: list[Job] = []
    monkeypatch.setattr(job_worker, "schedule_job", lambda job, transport=None: scheduled.append(job))
    job = await database.create_job("p", video_title="T")
    await database.update_job(job.id, status=JobStatus.ERROR, error_message="timeout")

    new_job = await job_worker.retry_job(job.id)

    assert new_job.id != job.id
    assert new_job.status is JobStatus.QUEUED
    assert new_job.prompt == "p"
    assert new_job.video_title == "T"
    assert (await database.get_job(job.id)).status is JobStatus.ERROR
    assert scheduled == [new_job]


async def test_retry_rearms_legacy_job_without_resending(db_path, monkeypatch) -> None:
    monkeypatch.setattr(job_worker, "schedule_job", lambda job, transport=None: True)
    job = await database.create_job("p", legacy=True)
    await database.update_job(
        job.id, status=JobStatus.ERROR, request_message_id=77, error_message="timeout"
    )

    retried = await job_worker.retry_job(job.id)

    assert retried.id == job.id
    assert retried.status is JobStatus.WAITING_VIDEO
    assert retried.request_message_id == 77
    assert retried.error_message is None


async def test_resumed_legacy_wait_does_not_resend(db_path, download_dir, transport) -> None:
    job = await database.create_job("p", legacy=True)
    job = await database.update_job(job.id, status=JobStatus.WAITING_VIDEO, request_message_id=100)
    transport.add_message("video", reply_to=100)

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert transport.sent == []
    assert done.status is JobStatus.READY


async def test_retry_only_from_error(db_path) -> None:
    job = await database.create_job("p")

    with pytest.raises(InvalidTransitionError):
        await job_worker.retry_job(job.id)


# ── Startup recovery ───────────────────────────────────────────────────────────

async def test_recovery_resumes_waits_and_fails_interrupted_sends(db_path, monkeypatch) -> None:
    scheduled: list[str] = []
    monkeypatch.setattr(
        job_worker, "schedule_job", lambda job, transport=None: scheduled.append(job.id) or True
    )
    sending = await database.create_job("s")
    await database.update_job(sending.id, status=JobStatus.SENDING)
    downloading = await database.create_job("d")
    await database.update_job(
        downloading.id, status=JobStatus.DOWNLOADING, request_message_id=5, video_message_id=9
    )

    await job_worker.recover_interrupted_jobs()

    assert (await database.get_job(sending.id)).status is JobStatus.ERROR
    resumed = await database.get_job(downloading.id)
    assert resumed.status is JobStatus.WAITING_VIDEO
    assert scheduled == [downloading.id]


async def test_recovered_download_matches_its_own_video_again(db_path, download_dir, transport) -> None:
    job = await database.create_job("p")
    video = transport.add_message(embed("p", job.id))
    job = await database.update_job(
        job.id, status=JobStatus.WAITING_VIDEO, request_message_id=50, video_message_id=video.id
    )

    done = await job_worker.process_job(job, transport, _correlator(transport))

    assert done.status is JobStatus.READY
    assert done.video_message_id == video.id


async def test_photo_reply_is_never_downloaded(db_path, download_dir, transport) -> None:
    def on_send(request) -> None:
        transport.add_message(request.text, payload=PayloadKind.PHOTO)

    transport.on_send = on_send
    job = await database.create_job("p")

    done = await job_worker.process_job(job, transport, _correlator(transport, max_wait=20))

    assert done.status is JobStatus.ERROR
    assert done.local_artifact_path is None
