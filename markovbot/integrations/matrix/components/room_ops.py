"""
Matrix Room Operations

Handles joining rooms and setting the bot's per-room display name.
"""

import logging
from typing import Any, Dict

from nio import AsyncClient, JoinResponse, RoomPutStateResponse

from ....exceptions import TransportError
from .auth import NETWORK_ERRORS

logger = logging.getLogger(__name__)


class MatrixRoomOperations:
    """Handles Matrix room operations."""

    def __init__(self, client: AsyncClient, user_id: str):
        self.client = client
        self.user_id = user_id

    async def join_room(self, room_identifier: str, nick: str = None) -> Dict[str, Any]:
        """Join a room by ID or alias and apply the room nick.

        Server refusals are reported in the result; network failures raise
        TransportError.
        """
        logger.debug(f"MatrixRoomOps: Attempting to join room: {room_identifier}")
        try:
            response = await self.client.join(room_identifier)
        except NETWORK_ERRORS as e:
            raise TransportError(f"Error joining room {room_identifier}: {e}") from e

        if not isinstance(response, JoinResponse):
            error_msg = f"Failed to join room: {response}"
            logger.error(f"MatrixRoomOps: {error_msg}")
            return {"success": False, "error": error_msg, "room_identifier": room_identifier}

        room_id = response.room_id
        logger.info(f"MatrixRoomOps: Joined room {room_identifier} ({room_id})")

        nick_set = False
        if nick:
            nick_set = await self.set_room_nick(room_id, nick)

        return {
            "success": True,
            "room_id": room_id,
            "room_identifier": room_identifier,
            "nick_set": nick_set,
        }

    async def set_room_nick(self, room_id: str, nick: str) -> bool:
        """Set the bot's display name in one room only."""
        content = {"membership": "join", "displayname": nick}
        try:
            response = await self.client.room_put_state(
                room_id, "m.room.member", content, state_key=self.user_id
            )
        except NETWORK_ERRORS as e:
            raise TransportError(f"Error setting nick in {room_id}: {e}") from e

        if isinstance(response, RoomPutStateResponse):
            logger.debug(f"MatrixRoomOps: Nick in {room_id} set to '{nick}'")
            return True
        logger.warning(f"MatrixRoomOps: Could not set nick '{nick}' in {room_id}: {response}")
        return False
