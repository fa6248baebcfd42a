"""
Matrix integration: a reconnecting session over matrix-nio.
"""

from .session import MatrixCredentials, MatrixSession, RoomMembership
from .transport import MatrixTransport

__all__ = ["MatrixCredentials", "MatrixSession", "MatrixTransport", "RoomMembership"]
