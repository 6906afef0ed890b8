from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agent.errors import TransportError
from db import database
from models.message import ChatMessage, PayloadKind
from workers import job_worker

AGENT = "syntxaibot"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "jobs.db"
    monkeypatch.setattr(database, "DB_PATH", str(path))
    asyncio.run(database.init_db())
    return path


@pytest.fixture
def download_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "downloads"
    monkeypatch.setattr(job_worker, "DOWNLOAD_DIR", str(path))
    return path


@pytest.fixture(autouse=True)
def _reset_worker_state():
    job_worker._running.clear()
    job_worker._callbacks.clear()
    yield
    job_worker._running.clear()
    job_worker._callbacks.clear()


class FakeClock:
    """Monotonic clock that only moves when the code under test sleeps."""

    def __init__(self) -> None:
        self.t = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds
        # let concurrently running waits interleave
        await asyncio.sleep(0)


class FakeTransport:
    """In-memory stand-in for the Telegram conversation with the agent."""

    def __init__(self) -> None:
        self.messages: list[ChatMessage] = []
        self.sent: list[tuple[str, str]] = []
        self.file_payloads: dict[int, bytes] = {}
        self.buffer_payloads: dict[int, bytes] = {}
        self.list_errors: list[Exception] = []
        self.list_calls = 0
        self.send_error: Exception | None = None
        self.file_mode_error: Exception | None = None
        self.on_send = None
        self._next_id = 100

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_message(
        self,
        text: str = "",
        *,
        payload: PayloadKind = PayloadKind.VIDEO,
        sender: str | None = AGENT,
        reply_to: int | None = None,
        age: timedelta = timedelta(seconds=30),
        data: bytes = b"\x00\x00\x00\x18ftypmp42",
        caption: str | None = None,
        outgoing: bool = False,
    ) -> ChatMessage:
        msg = ChatMessage(
            id=self._new_id(),
            sender=sender,
            text=text,
            caption=caption,
            reply_to_id=reply_to,
            payload=payload,
            timestamp=NOW - age,
            outgoing=outgoing,
        )
        self.messages.append(msg)
        self.file_payloads[msg.id] = data
        self.buffer_payloads[msg.id] = data
        return msg

    async def send(self, peer: str, text: str) -> int:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((peer, text))
        msg = self.add_message(
            text, payload=PayloadKind.NONE, sender=None, age=timedelta(0), outgoing=True
        )
        if self.on_send is not None:
            self.on_send(msg)
        return msg.id

    async def list_recent(self, peer: str, limit: int) -> list[ChatMessage]:
        self.list_calls += 1
        if self.list_errors:
            raise self.list_errors.pop(0)
        return sorted(self.messages, key=lambda m: m.id, reverse=True)[:limit]

    async def download_to_file(self, message: ChatMessage, path: Path) -> Path:
        if self.file_mode_error is not None:
            raise self.file_mode_error
        path.write_bytes(self.file_payloads.get(message.id, b""))
        return path

    async def download_bytes(self, message: ChatMessage) -> bytes:
        return self.buffer_payloads.get(message.id, b"")


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def flaky(times: int) -> list[Exception]:
    return [TransportError("connection reset") for _ in range(times)]
