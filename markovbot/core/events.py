"""
Inbound event structures shared by the Matrix session and the message router.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class StanzaType(Enum):
    """What the transport saw on the wire."""
    MESSAGE = "message"
    MEMBERSHIP = "membership"
    ERROR = "error"


class EventKind(Enum):
    """How the router classified an event."""
    ROOM_MESSAGE = "room_message"
    DIRECT_MESSAGE = "direct_message"
    PRESENCE = "presence"
    ERROR = "error"


@dataclass(frozen=True)
class InboundEvent:
    """A parsed Matrix event as handed over by the transport."""

    stanza_type: StanzaType
    room_id: str
    sender: str
    body: str = ""
    event_id: Optional[str] = None
    member_count: int = 0
    membership: Optional[str] = None  # join / leave / invite / ban for membership events
    state_key: Optional[str] = None   # user the membership event is about
    error: Optional[str] = None
    received_at: float = field(default_factory=time.time)
