"""
Base Session

Provides a minimal common interface for protocol sessions: lifecycle state,
last error and connection attempt bookkeeping. Platform sessions implement
connect/disconnect and the event stream on top of it.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    JOINING_ROOMS = "joining_rooms"
    ACTIVE = "active"


class BaseSession(ABC):
    """
    Base class for protocol sessions.

    Tracks the lifecycle state and connection attempts so that status can be
    reported uniformly regardless of the underlying protocol.
    """

    def __init__(self, integration_id: str, display_name: str):
        self.integration_id = integration_id
        self.display_name = display_name
        self._state = SessionState.DISCONNECTED
        self._last_error: Optional[str] = None
        self._connection_attempts = 0

    @property
    def state(self) -> SessionState:
        """Get current session state"""
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message"""
        return self._last_error

    @property
    def connection_attempts(self) -> int:
        return self._connection_attempts

    @property
    def is_active(self) -> bool:
        return self._state == SessionState.ACTIVE

    @abstractmethod
    async def connect(self, credentials: Optional[Dict[str, Any]] = None) -> str:
        """
        Connect and authenticate.

        Args:
            credentials: Optional platform-specific credentials overriding the configured ones

        Returns:
            The session's own identity
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Drop the current connection."""
        pass

    def _set_state(self, state: SessionState, error: Optional[str] = None) -> None:
        """
        Set session state and error state.

        Args:
            state: New state
            error: Optional error message
        """
        old_state = self._state
        self._state = state
        if error is not None or state == SessionState.ACTIVE:
            self._last_error = error

        if state != old_state:
            logger.info(f"{self.display_name}: State changed from {old_state.value} to {state.value}")

        if error:
            logger.warning(f"{self.display_name}: {error}")

    def _increment_connection_attempts(self) -> None:
        """Increment connection attempt counter"""
        self._connection_attempts += 1

    def _reset_connection_attempts(self) -> None:
        """Reset connection attempt counter"""
        self._connection_attempts = 0

    def get_status_info(self) -> Dict[str, Any]:
        """
        Get comprehensive status information.

        Returns:
            Dict containing state, error, and connection attempt info
        """
        return {
            "integration_id": self.integration_id,
            "display_name": self.display_name,
            "state": self._state.value,
            "last_error": self._last_error,
            "connection_attempts": self._connection_attempts,
        }
