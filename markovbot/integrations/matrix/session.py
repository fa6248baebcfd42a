"""
Matrix Session

Owns the connection to the homeserver and the reconnection state machine:

    DISCONNECTED -> CONNECTING -> AUTHENTICATED -> JOINING_ROOMS -> ACTIVE

Any transport failure drops back to DISCONNECTED. Every attempt after the
first waits out a capped exponential backoff first, and attempts never stop.
``receive()`` drives the machine, so consumers just iterate it and get
events from whatever connection is current.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from ...core.events import InboundEvent, StanzaType
from ...exceptions import AuthError, TransportError
from ..backoff import ExponentialBackoff
from ..base_session import BaseSession, SessionState
from .transport import MatrixTransport

logger = logging.getLogger(__name__)


@dataclass
class MatrixCredentials:
    homeserver: str
    user_id: str
    password: str
    device_name: str = "markovbot"


@dataclass
class RoomMembership:
    """Desired membership of one configured room and whether it currently holds."""
    room: str
    nick: str
    scopes: List[str] = field(default_factory=list)
    room_id: Optional[str] = None
    joined: bool = False


class MatrixSession(BaseSession):
    """Reconnecting Matrix session."""

    def __init__(
        self,
        credentials: MatrixCredentials,
        rooms: List[RoomMembership],
        backoff: Optional[ExponentialBackoff] = None,
        transport_factory: Optional[Callable[[MatrixCredentials], MatrixTransport]] = None,
        rejoin_interval: float = 300.0,
        auth_alert_threshold: int = 5,
        store_path: Path = Path("matrix_store"),
        sync_timeout_ms: int = 30000,
        request_timeout: float = 60.0,
        accept_invites: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__("matrix", "MatrixSession")
        self.credentials = credentials
        self.rooms = list(rooms)
        self.backoff = backoff or ExponentialBackoff()
        self.rejoin_interval = rejoin_interval
        self.auth_alert_threshold = auth_alert_threshold
        self.store_path = Path(store_path)
        self.sync_timeout_ms = sync_timeout_ms
        self.request_timeout = request_timeout
        self._transport_factory = transport_factory or self._default_transport
        self.accept_invites = accept_invites
        self._clock = clock

        self._transport: Optional[MatrixTransport] = None
        self._own_id: Optional[str] = None
        self._send_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._closing = False
        self._first_attempt = True
        self._auth_failures = 0
        self._last_reconcile = 0.0

    def _default_transport(self, credentials: MatrixCredentials) -> MatrixTransport:
        return MatrixTransport(
            homeserver=credentials.homeserver,
            user_id=credentials.user_id,
            password=credentials.password,
            store_path=self.store_path,
            device_name=credentials.device_name,
            sync_timeout_ms=self.sync_timeout_ms,
            request_timeout=self.request_timeout,
        )

    @property
    def own_id(self) -> Optional[str]:
        """The bot's user id once authenticated, else the configured one."""
        return self._own_id or self.credentials.user_id

    @property
    def joined_rooms(self) -> Set[str]:
        return {m.room_id for m in self.rooms if m.joined and m.room_id}

    def membership_for(self, room_id: str) -> Optional[RoomMembership]:
        """The configured room behind ``room_id`` (matched by id or by the configured alias)."""
        for membership in self.rooms:
            if membership.room_id == room_id or membership.room == room_id:
                return membership
        return None

    async def connect(self, credentials: Optional[Dict[str, Any]] = None) -> str:
        """Open a fresh transport, authenticate and prime the sync token.

        Raises AuthError or TransportError; the connection is dropped again
        before either propagates.
        """
        if credentials:
            self.credentials = replace(self.credentials, **credentials)

        self._increment_connection_attempts()
        self._set_state(SessionState.CONNECTING)
        self._transport = self._transport_factory(self.credentials)
        try:
            self._own_id = await self._transport.open()
            self._set_state(SessionState.AUTHENTICATED)
            await self._transport.initial_sync()
        except (AuthError, TransportError) as e:
            await self._drop(str(e))
            raise
        return self._own_id

    async def join(self, room: str, nickname: Optional[str] = None) -> Optional[str]:
        """Join ``room`` and set the room nick. Returns the room id, or None if the server refused."""
        if self._transport is None:
            raise TransportError(f"Cannot join {room}: not connected")

        result = await self._transport.join(room, nickname)
        membership = self.membership_for(room)
        if not result.get("success"):
            logger.warning(f"MatrixSession: Could not join {room}: {result.get('error')}")
            return None

        room_id = result["room_id"]
        if membership is not None:
            membership.room_id = room_id
            membership.joined = True
        return room_id

    async def disconnect(self) -> None:
        await self._drop(None)

    async def _drop(self, error: Optional[str]) -> None:
        transport, self._transport = self._transport, None
        for membership in self.rooms:
            membership.joined = False
        if transport is not None:
            await transport.close()
        self._set_state(SessionState.DISCONNECTED, error)

    async def _wait(self, delay: float) -> bool:
        """Sleep for ``delay`` unless closed first. Returns True when closed."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    async def _join_desired(self) -> None:
        self._set_state(SessionState.JOINING_ROOMS)
        for membership in self.rooms:
            if not membership.joined:
                await self.join(membership.room, membership.nick)

        missing = [m.room for m in self.rooms if not m.joined]
        if missing:
            logger.warning(
                f"MatrixSession: {len(missing)} rooms not joined, retrying every {self.rejoin_interval}s: {missing}"
            )

    async def _establish(self) -> bool:
        """Run the state machine until ACTIVE. Returns False if closed first."""
        while not self._closing:
            if not self._first_attempt:
                delay = self.backoff.next_delay()
                logger.info(
                    f"MatrixSession: Reconnecting in {delay:.1f}s "
                    f"(attempt {self._connection_attempts + 1})"
                )
                if await self._wait(delay):
                    return False
            self._first_attempt = False

            try:
                await self.connect()
                await self._join_desired()
            except AuthError as e:
                self._auth_failures += 1
                if self.auth_alert_threshold and self._auth_failures % self.auth_alert_threshold == 0:
                    logger.critical(
                        f"MatrixSession: Credentials for {self.credentials.user_id} rejected "
                        f"{self._auth_failures} times in a row, still retrying: {e}"
                    )
                continue
            except TransportError as e:
                await self._drop(str(e))
                continue

            self._auth_failures = 0
            self.backoff.reset()
            self._reset_connection_attempts()
            self._last_reconcile = self._clock()
            self._set_state(SessionState.ACTIVE)
            logger.info(f"MatrixSession: Active as {self._own_id} in {len(self.joined_rooms)} rooms")
            return True
        return False

    async def receive(self) -> AsyncIterator[InboundEvent]:
        """Yield inbound events in transport order, reconnecting as needed."""
        while not self._closing:
            if not self.is_active and not await self._establish():
                break

            transport = self._transport
            if transport is None:
                continue
            try:
                events = await transport.sync()
            except TransportError as e:
                if not self._closing:
                    await self._drop(f"Sync failed: {e}")
                continue

            for event in events:
                try:
                    await self._track_membership(event)
                except TransportError as e:
                    await self._drop(f"Accepting invite failed: {e}")
                yield event

            await self._reconcile()

    async def _track_membership(self, event: InboundEvent) -> None:
        if event.stanza_type != StanzaType.MEMBERSHIP or event.state_key != self.own_id:
            return
        membership = self.membership_for(event.room_id)
        if membership is None:
            # Direct chats only reach us once their invite is accepted
            if event.membership == "invite" and self.accept_invites and self._transport is not None:
                logger.info(f"MatrixSession: Accepting invite to {event.room_id} from {event.sender}")
                await self.join(event.room_id)
            return

        if event.membership in ("leave", "ban"):
            if membership.joined:
                membership.joined = False
                logger.warning(
                    f"MatrixSession: Removed from {membership.room} "
                    f"({event.membership} by {event.sender}), will rejoin"
                )
        elif event.membership == "join":
            membership.room_id = event.room_id
            membership.joined = True
        elif event.membership == "invite" and not membership.joined:
            # Invited back into a configured room: do not wait for the interval
            self._last_reconcile = float("-inf")

    async def _reconcile(self) -> None:
        if not self.is_active:
            return
        pending = [m for m in self.rooms if not m.joined]
        if not pending or self._clock() - self._last_reconcile < self.rejoin_interval:
            return

        self._last_reconcile = self._clock()
        for membership in pending:
            try:
                await self.join(membership.room, membership.nick)
            except TransportError as e:
                await self._drop(f"Rejoin failed: {e}")
                return

    async def send(self, room_id: str, body: str) -> bool:
        """Hand one text message to the transport. False if it was dropped."""
        async with self._send_lock:
            if not self.is_active or self._transport is None:
                logger.warning(f"MatrixSession: Not active ({self.state.value}), dropping message to {room_id}")
                return False
            try:
                result = await self._transport.send_text(room_id, body)
            except TransportError as e:
                logger.warning(f"MatrixSession: Send to {room_id} failed: {e}")
                return False
        return bool(result.get("success"))

    async def close(self) -> None:
        """Stop reconnecting, cancel any backoff wait and close the transport."""
        self._closing = True
        self._stop_event.set()
        await self._drop(None)
        logger.info("MatrixSession: Closed")

    def get_status_info(self) -> Dict[str, Any]:
        info = super().get_status_info()
        info.update({
            "own_id": self.own_id,
            "joined_rooms": sorted(self.joined_rooms),
            "configured_rooms": [m.room for m in self.rooms],
            "backoff_attempts": self.backoff.attempts,
        })
        return info
