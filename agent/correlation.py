"""
Correlation engine — finds the agent's video reply that belongs to one job.

The agent answers asynchronously in a shared chat, so each poll cycle scans
the recent conversation and runs the candidates through:

    1. sender is the agent   (kept when the sender could not be resolved)
    2. not claimed by another job   (claimed set re-read every cycle)
    3. carries a video document     (photos and plain documents rejected)
    4. strategies, in strict precedence:
         marker      caption/text carries [JOB_ID: <this job>]
         reply_link  legacy jobs only: replies to the job's request message
         temporal    legacy jobs only: newest unlinked video sent after the
                     request and inside the recency window

Within a strategy the highest message id wins. Only the marker strategy is
safe with several jobs in flight; the legacy strategies can attribute one
job's video to another legacy job waiting at the same time.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional, Protocol

from agent import marker
from agent.errors import AuthenticationError, NoMatchTimeoutError, TransportError
from models.message import ChatMessage

logger = logging.getLogger(__name__)

SYNTX_BOT_USERNAME: str = os.getenv("SYNTX_BOT_USERNAME", "syntxaibot")
VIDEO_WAIT_TIMEOUT: float = float(os.getenv("VIDEO_WAIT_TIMEOUT", str(15 * 60)))
POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "10"))
HISTORY_LIMIT: int = int(os.getenv("HISTORY_LIMIT", "50"))
RECENCY_WINDOW: float = float(os.getenv("RECENCY_WINDOW", str(20 * 60)))


class MatchStrategy(str, Enum):
    MARKER = "marker"
    REPLY_LINK = "reply_link"
    TEMPORAL = "temporal"


@dataclass
class Candidate:
    message: ChatMessage
    marker: Optional[str]
    reply_to_id: Optional[int]
    age: timedelta


@dataclass
class Match:
    message: ChatMessage
    strategy: MatchStrategy


class MessageSource(Protocol):
    async def list_recent(self, peer: str, limit: int) -> list[ChatMessage]:
        ...


ClaimedIds = Callable[[str], Awaitable[set[int]]]


def _normalize_username(name: str | None) -> str:
    return (name or "").lstrip("@").lower()


def collect_candidates(
    messages: Iterable[ChatMessage],
    *,
    agent_username: str,
    claimed_ids: set[int],
    now: datetime,
) -> list[Candidate]:
    """Apply the direction, sender, dedup and payload filters; newest first."""
    expected = _normalize_username(agent_username)
    out: list[Candidate] = []
    for msg in messages:
        if msg.outgoing:
            continue
        if msg.sender is not None and _normalize_username(msg.sender) != expected:
            continue
        if msg.id in claimed_ids:
            continue
        if not msg.has_video:
            continue
        out.append(Candidate(
            message=msg,
            marker=marker.extract(msg.text, msg.caption),
            reply_to_id=msg.reply_to_id,
            age=now - msg.timestamp,
        ))
    out.sort(key=lambda c: c.message.id, reverse=True)
    return out


def select_match(
    candidates: list[Candidate],
    *,
    job_id: str,
    request_message_id: Optional[int],
    legacy: bool,
    recency_window: timedelta,
) -> Optional[Match]:
    """Pick the candidate for *job_id*; *candidates* must be sorted newest first."""
    for c in candidates:
        if c.marker == job_id:
            return Match(c.message, MatchStrategy.MARKER)

    if not legacy or request_message_id is None:
        return None

    for c in candidates:
        if c.reply_to_id == request_message_id:
            return Match(c.message, MatchStrategy.REPLY_LINK)

    for c in candidates:
        if c.reply_to_id is not None:
            continue
        if c.message.id <= request_message_id:
            continue
        if c.age > recency_window:
            continue
        return Match(c.message, MatchStrategy.TEMPORAL)

    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoCorrelator:
    """
    Polls the agent conversation until the video for a job shows up.

    Usage:
        correlator = VideoCorrelator(transport, get_claimed_message_ids)
        match = await correlator.wait_for_video(job.id, job.request_message_id)
    """

    def __init__(
        self,
        source: MessageSource,
        claimed_ids: ClaimedIds,
        *,
        agent_username: str = SYNTX_BOT_USERNAME,
        history_limit: int = HISTORY_LIMIT,
        poll_interval: float = POLL_INTERVAL,
        recency_window: float = RECENCY_WINDOW,
        max_wait: float = VIDEO_WAIT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if history_limit < 1:
            raise ValueError("history_limit must be positive")
        self.source = source
        self.claimed_ids = claimed_ids
        self.agent_username = agent_username
        self.history_limit = history_limit
        self.poll_interval = poll_interval
        self.recency_window = timedelta(seconds=recency_window)
        self.max_wait = max_wait
        self.clock = clock
        self._sleep = sleep
        self._now = now

    async def poll_once(
        self,
        job_id: str,
        request_message_id: Optional[int],
        *,
        legacy: bool = False,
    ) -> Optional[Match]:
        """Run a single scan. Transport errors propagate to the caller."""
        messages = await self.source.list_recent(self.agent_username, self.history_limit)
        claimed = await self.claimed_ids(job_id)
        candidates = collect_candidates(
            messages,
            agent_username=self.agent_username,
            claimed_ids=claimed,
            now=self._now(),
        )
        return select_match(
            candidates,
            job_id=job_id,
            request_message_id=request_message_id,
            legacy=legacy,
            recency_window=self.recency_window,
        )

    async def wait_for_video(
        self,
        job_id: str,
        request_message_id: Optional[int],
        *,
        legacy: bool = False,
        max_wait: float | None = None,
        started_at: float | None = None,
    ) -> Match:
        """
        Poll until a match is found. Raises NoMatchTimeoutError once *max_wait*
        seconds (default: the correlator's budget) have passed since
        *started_at* (a reading of self.clock, default: now);
        AuthenticationError is raised immediately.
        """
        if max_wait is None:
            max_wait = self.max_wait
        start = self.clock() if started_at is None else started_at
        cycle = 0
        logger.info(
            "Waiting for video",
            extra={"job_id": job_id, "request_message_id": request_message_id,
                   "legacy": legacy, "max_wait": max_wait},
        )

        while self.clock() - start < max_wait:
            cycle += 1
            try:
                match = await self.poll_once(job_id, request_message_id, legacy=legacy)
            except AuthenticationError:
                raise
            except TransportError as exc:
                logger.warning(
                    "Poll cycle failed, will retry",
                    extra={"job_id": job_id, "cycle": cycle, "error": str(exc)},
                )
                match = None

            if match is not None:
                logger.info(
                    "Video matched",
                    extra={
                        "job_id":     job_id,
                        "message_id": match.message.id,
                        "strategy":   match.strategy.value,
                        "cycle":      cycle,
                    },
                )
                return match

            await self._sleep(self.poll_interval)

        elapsed = self.clock() - start
        logger.warning(
            "No video before timeout",
            extra={"job_id": job_id, "cycles": cycle, "elapsed": elapsed},
        )
        raise NoMatchTimeoutError(job_id, elapsed)
