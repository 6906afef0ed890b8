from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class PayloadKind(str, Enum):
    """Kind of attachment carried by an inbound message, decided once per message."""

    NONE = "none"
    PHOTO = "photo"
    DOCUMENT = "document"   # document without a video attribute
    VIDEO = "video"         # document tagged with a video attribute


@dataclass
class ChatMessage:
    id: int
    sender: Optional[str]           # username, None when the lookup failed
    text: str
    timestamp: datetime             # timezone-aware UTC
    payload: PayloadKind = PayloadKind.NONE
    caption: Optional[str] = None
    reply_to_id: Optional[int] = None
    outgoing: bool = False           # sent by this session
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def has_video(self) -> bool:
        return self.payload is PayloadKind.VIDEO
