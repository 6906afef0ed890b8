"""
Chat transport for the Syntx generation agent via a Telethon user session.

A Telegram bot cannot read another bot's conversation, so the agent is
driven from a regular user account whose session file is created once with
scripts/telegram_login.py.

Usage:
    async with SyntxTransport() as transport:
        msg_id = await transport.send("syntxaibot", "a cat surfing [JOB_ID: ...]")
        recent = await transport.list_recent("syntxaibot", limit=50)
"""

import asyncio
import logging
import os
from pathlib import Path

from telethon import TelegramClient, errors
from telethon.tl.types import (
    Document,
    DocumentAttributeVideo,
    MessageMediaDocument,
    MessageMediaPhoto,
)

from agent.errors import AuthenticationError, PeerUnavailableError, TransportError
from models.message import ChatMessage, PayloadKind

logger = logging.getLogger(__name__)

TELEGRAM_API_ID: int = int(os.getenv("TELEGRAM_API_ID", "0"))
TELEGRAM_API_HASH: str = os.getenv("TELEGRAM_API_HASH", "")
TELEGRAM_SESSION_PATH: str = os.getenv("TELEGRAM_SESSION_PATH", "sessions/syntx_user")

_NOT_AUTHORIZED = (
    "Telegram user session is not authorized. "
    "Run scripts/telegram_login.py and restart the service."
)


def classify_payload(media) -> PayloadKind:
    """Decide once what kind of attachment a Telethon message carries."""
    if media is None:
        return PayloadKind.NONE
    if isinstance(media, MessageMediaPhoto):
        return PayloadKind.PHOTO
    if isinstance(media, MessageMediaDocument):
        document = media.document
        if not isinstance(document, Document):
            return PayloadKind.NONE
        if any(isinstance(attr, DocumentAttributeVideo) for attr in document.attributes):
            return PayloadKind.VIDEO
        return PayloadKind.DOCUMENT
    return PayloadKind.NONE


class SyntxTransport:
    """Thin async wrapper that turns Telethon objects into ChatMessage records."""

    def __init__(
        self,
        session_path: str = TELEGRAM_SESSION_PATH,
        api_id: int = TELEGRAM_API_ID,
        api_hash: str = TELEGRAM_API_HASH,
    ) -> None:
        self.session_path = session_path
        self._client = TelegramClient(session_path, api_id, api_hash)
        self._entities: dict[str, object] = {}

    async def __aenter__(self) -> "SyntxTransport":
        await self.connect()
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    # ── Session ────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        Path(self.session_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._client.connect()
            authorized = await self._client.is_user_authorized()
        except (errors.RPCError, ConnectionError, OSError) as exc:
            raise TransportError(f"Could not connect to Telegram: {exc}") from exc
        if not authorized:
            raise AuthenticationError(_NOT_AUTHORIZED)
        logger.info("Telegram user session connected", extra={"session": self.session_path})

    async def close(self) -> None:
        await self._client.disconnect()

    # ── Helpers ────────────────────────────────────────────────────────────────

    async def _resolve(self, peer: str):
        key = peer.lstrip("@").lower()
        if key in self._entities:
            return self._entities[key]
        try:
            entity = await self._client.get_entity(key)
        except errors.UnauthorizedError as exc:
            raise AuthenticationError(_NOT_AUTHORIZED) from exc
        except (errors.RPCError, ValueError, ConnectionError, OSError) as exc:
            raise PeerUnavailableError(f"Cannot resolve peer @{key}: {exc}") from exc
        self._entities[key] = entity
        return entity

    async def _sender_username(self, message, cache: dict) -> str | None:
        sender_id = message.sender_id
        if sender_id in cache:
            return cache[sender_id]
        try:
            sender = await message.get_sender()
            username = getattr(sender, "username", None)
        except Exception as exc:
            logger.debug("Sender lookup failed", extra={"message_id": message.id, "error": str(exc)})
            username = None
        # Only successful lookups are cached; failures are retried next cycle
        if username is not None:
            cache[sender_id] = username
        return username

    def _to_chat_message(self, message, sender: str | None) -> ChatMessage:
        reply_to = getattr(message, "reply_to", None)
        return ChatMessage(
            id=message.id,
            sender=sender,
            text=message.message or "",
            # Telegram stores media captions in the message text itself
            caption=None,
            reply_to_id=getattr(reply_to, "reply_to_msg_id", None),
            payload=classify_payload(message.media),
            timestamp=message.date,
            outgoing=bool(getattr(message, "out", False)),
            raw=message,
        )

    # ── Public API ─────────────────────────────────────────────────────────────

    async def send(self, peer: str, text: str) -> int:
        entity = await self._resolve(peer)
        try:
            sent = await self._client.send_message(entity, text)
        except errors.UnauthorizedError as exc:
            raise AuthenticationError(_NOT_AUTHORIZED) from exc
        except (errors.RPCError, ConnectionError, OSError) as exc:
            raise TransportError(f"Could not send message to @{peer}: {exc}") from exc
        logger.info("Prompt sent", extra={"peer": peer, "message_id": sent.id})
        return sent.id

    async def list_recent(self, peer: str, limit: int) -> list[ChatMessage]:
        """Most recent *limit* messages in the conversation, newest first."""
        entity = await self._resolve(peer)
        try:
            raw_messages = await self._client.get_messages(entity, limit=limit)
        except errors.UnauthorizedError as exc:
            raise AuthenticationError(_NOT_AUTHORIZED) from exc
        except (errors.RPCError, ConnectionError, OSError) as exc:
            raise TransportError(f"Could not fetch history of @{peer}: {exc}") from exc

        senders: dict = {}
        out = []
        for message in raw_messages:
            # our own prompts; no sender lookup needed
            sender = None if message.out else await self._sender_username(message, senders)
            out.append(self._to_chat_message(message, sender))
        return out

    async def download_to_file(self, message: ChatMessage, path: Path) -> Path:
        """Primary transfer mode: stream the payload straight to *path*."""
        try:
            result = await self._client.download_media(message.raw, file=str(path))
        except errors.UnauthorizedError as exc:
            raise AuthenticationError(_NOT_AUTHORIZED) from exc
        except (errors.RPCError, ConnectionError, OSError) as exc:
            raise TransportError(f"File download of message {message.id} failed: {exc}") from exc
        if result is None:
            raise TransportError(f"Message {message.id} has no downloadable media")
        # Give the filesystem a moment to flush before the caller stats the file
        await asyncio.sleep(0.5)
        return Path(result)

    async def download_bytes(self, message: ChatMessage) -> bytes:
        """Secondary transfer mode: fetch the payload into memory."""
        try:
            data = await self._client.download_media(message.raw, file=bytes)
        except errors.UnauthorizedError as exc:
            raise AuthenticationError(_NOT_AUTHORIZED) from exc
        except (errors.RPCError, ConnectionError, OSError) as exc:
            raise TransportError(f"Buffer download of message {message.id} failed: {exc}") from exc
        return data or b""


# ── Shared session ────────────────────────────────────────────────────────────

_transport: SyntxTransport | None = None
_transport_lock = asyncio.Lock()


async def get_transport() -> SyntxTransport:
    """Return the process-wide connected transport, connecting on first use."""
    global _transport
    async with _transport_lock:
        if _transport is None:
            transport = SyntxTransport()
            await transport.connect()
            _transport = transport
        return _transport


async def close_transport() -> None:
    global _transport
    if _transport is not None:
        await _transport.close()
        _transport = None
