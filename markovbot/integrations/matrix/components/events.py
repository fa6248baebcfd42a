"""
Matrix Event Parsing

Turns nio sync responses into ``InboundEvent`` objects, preserving the order
in which the homeserver delivered them. Only text messages, membership
changes and undecryptable or malformed events are surfaced; notices (what
other bots send) and everything else are skipped.
"""

import logging
from typing import Dict, List

from nio import (
    BadEvent,
    InviteMemberEvent,
    MatrixRoom,
    MegolmEvent,
    RoomMemberEvent,
    RoomMessageText,
    SyncResponse,
    UnknownBadEvent,
)

from ....core.events import InboundEvent, StanzaType

logger = logging.getLogger(__name__)


class MatrixEventParser:
    """Converts sync responses into inbound events."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    def parse_sync(self, response: SyncResponse, rooms: Dict[str, MatrixRoom]) -> List[InboundEvent]:
        events: List[InboundEvent] = []

        for room_id, info in response.rooms.join.items():
            member_count = self._member_count(rooms.get(room_id))
            for event in info.timeline.events:
                parsed = self._parse_timeline_event(room_id, event, member_count)
                if parsed is not None:
                    events.append(parsed)

        # Rooms we were removed from still deliver the leave event in their timeline
        for room_id, info in response.rooms.leave.items():
            for event in info.timeline.events:
                if isinstance(event, RoomMemberEvent):
                    events.append(self._membership_event(room_id, event, 0))

        for room_id, info in response.rooms.invite.items():
            for event in info.invite_state:
                if (
                    isinstance(event, InviteMemberEvent)
                    and event.state_key == self.user_id
                    and event.membership == "invite"
                ):
                    events.append(InboundEvent(
                        stanza_type=StanzaType.MEMBERSHIP,
                        room_id=room_id,
                        sender=event.sender,
                        membership="invite",
                        state_key=event.state_key,
                    ))

        return events

    def _parse_timeline_event(self, room_id: str, event, member_count: int):
        if isinstance(event, RoomMessageText):
            return InboundEvent(
                stanza_type=StanzaType.MESSAGE,
                room_id=room_id,
                sender=event.sender,
                body=event.body or "",
                event_id=event.event_id,
                member_count=member_count,
            )
        if isinstance(event, RoomMemberEvent):
            return self._membership_event(room_id, event, member_count)
        if isinstance(event, (MegolmEvent, BadEvent, UnknownBadEvent)):
            return InboundEvent(
                stanza_type=StanzaType.ERROR,
                room_id=room_id,
                sender=getattr(event, "sender", "") or "",
                event_id=getattr(event, "event_id", None),
                member_count=member_count,
                error=type(event).__name__,
            )
        return None

    def _membership_event(self, room_id: str, event: RoomMemberEvent, member_count: int) -> InboundEvent:
        return InboundEvent(
            stanza_type=StanzaType.MEMBERSHIP,
            room_id=room_id,
            sender=event.sender,
            event_id=event.event_id,
            member_count=member_count,
            membership=event.membership,
            state_key=event.state_key,
        )

    @staticmethod
    def _member_count(room: MatrixRoom) -> int:
        if room is None:
            return 0
        return getattr(room, "member_count", 0) or 0
