"""
Matrix Message Operations

Handles sending plain text messages to Matrix rooms.
"""

import logging
from typing import Any, Dict

from nio import AsyncClient, RoomSendResponse

from ....exceptions import TransportError
from .auth import NETWORK_ERRORS

logger = logging.getLogger(__name__)


class MatrixMessageOperations:
    """Handles Matrix message sending operations."""

    def __init__(self, client: AsyncClient, user_id: str):
        self.client = client
        self.user_id = user_id

    async def send_message(self, room_id: str, body: str) -> Dict[str, Any]:
        """Send a plain text message to a room."""
        message_content = {
            "msgtype": "m.text",
            "body": body,
        }

        logger.debug(f"MatrixMessageOps: Sending message to {room_id}")
        try:
            response = await self.client.room_send(
                room_id=room_id,
                message_type="m.room.message",
                content=message_content,
                ignore_unverified_devices=True,
            )
        except NETWORK_ERRORS as e:
            raise TransportError(f"Error sending message to {room_id}: {e}") from e

        if isinstance(response, RoomSendResponse):
            logger.debug(f"MatrixMessageOps: Message sent to {room_id}: {body[:100]}")
            return {
                "success": True,
                "event_id": response.event_id,
                "room_id": room_id
            }

        error_msg = f"Failed to send message: {response}"
        logger.error(f"MatrixMessageOps: {error_msg}")
        return {"success": False, "error": error_msg, "room_id": room_id}
