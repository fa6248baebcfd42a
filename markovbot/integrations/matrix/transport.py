"""
Matrix Transport

One live connection to the homeserver: a fresh nio ``AsyncClient`` plus the
components that operate on it. A transport is used for exactly one
connection; the session creates a new one after every disconnect.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from nio import AsyncClient, AsyncClientConfig, SyncError, SyncResponse

from ...exceptions import TransportError
from .components.auth import NETWORK_ERRORS, MatrixAuthHandler
from .components.events import MatrixEventParser
from .components.messages import MatrixMessageOperations
from .components.room_ops import MatrixRoomOperations

logger = logging.getLogger(__name__)


class MatrixTransport:
    """Wraps one nio client and exposes the operations the session needs."""

    def __init__(
        self,
        homeserver: str,
        user_id: str,
        password: str,
        store_path: Path,
        device_name: str = "markovbot",
        sync_timeout_ms: int = 30000,
        request_timeout: float = 60.0,
        client_factory: Optional[Callable[[], AsyncClient]] = None,
    ):
        self.homeserver = homeserver
        self.user_id = user_id
        self.store_path = Path(store_path)
        self.sync_timeout_ms = sync_timeout_ms
        self.request_timeout = request_timeout
        self._client_factory = client_factory or self._default_client

        self.client: Optional[AsyncClient] = None
        self.auth_handler = MatrixAuthHandler(homeserver, user_id, password, self.store_path, device_name)
        self.event_parser = MatrixEventParser(user_id)
        self.message_ops: Optional[MatrixMessageOperations] = None
        self.room_ops: Optional[MatrixRoomOperations] = None

    def _default_client(self) -> AsyncClient:
        config = AsyncClientConfig(
            encryption_enabled=False,
            store_sync_tokens=False,
            request_timeout=self.request_timeout,
            # Let failures reach the session instead of retrying inside nio forever
            max_timeouts=2,
            max_limit_exceeded=3,
        )
        return AsyncClient(self.homeserver, self.user_id, config=config)

    async def open(self) -> str:
        """Create the client and authenticate. Returns the bot's user id."""
        self.client = self._client_factory()
        own_id = await self.auth_handler.authenticate(self.client)
        self.user_id = own_id
        self.event_parser.user_id = own_id
        self.message_ops = MatrixMessageOperations(self.client, own_id)
        self.room_ops = MatrixRoomOperations(self.client, own_id)
        logger.debug(f"MatrixTransport: Authenticated as {own_id}")
        return own_id

    async def initial_sync(self) -> None:
        """Prime the sync token. Backlog delivered by this sync is discarded."""
        await self._sync(full_state=True)
        logger.info("MatrixTransport: Initial sync complete")

    async def sync(self) -> List:
        """One long-poll round; returns the new events in delivery order."""
        response = await self._sync()
        return self.event_parser.parse_sync(response, self.client.rooms)

    async def _sync(self, full_state: bool = False) -> SyncResponse:
        if self.client is None:
            raise TransportError("Transport is not open")
        try:
            response = await self.client.sync(timeout=self.sync_timeout_ms, full_state=full_state)
        except NETWORK_ERRORS as e:
            raise TransportError(f"Sync failed: {e}") from e

        if isinstance(response, SyncError) or not isinstance(response, SyncResponse):
            raise TransportError(f"Sync failed: {response}")
        return response

    async def join(self, room: str, nick: Optional[str] = None) -> Dict[str, Any]:
        if self.room_ops is None:
            raise TransportError("Transport is not open")
        return await self.room_ops.join_room(room, nick)

    async def send_text(self, room_id: str, body: str) -> Dict[str, Any]:
        if self.message_ops is None:
            raise TransportError("Transport is not open")
        return await self.message_ops.send_message(room_id, body)

    async def close(self) -> None:
        if self.client is None:
            return
        try:
            await self.client.close()
        except NETWORK_ERRORS as e:
            logger.warning(f"MatrixTransport: Error closing client: {e}")
        finally:
            self.client = None
            self.message_ops = None
            self.room_ops = None
