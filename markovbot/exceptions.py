"""
Custom Exception Classes

This module defines the exception taxonomy for the bot. Startup errors are
fatal, session errors are retried by the reconnection machine, and errors on
the message path are logged and the message is skipped.
"""

from typing import Optional


class MarkovBotBaseException(Exception):
    """Base exception for the bot."""

    pass


class ConfigurationError(MarkovBotBaseException):
    """Raised for configuration problems. Fatal at startup."""

    pass


class MatrixIntegrationError(MarkovBotBaseException):
    """Raised for errors specific to the Matrix session. Always retryable."""

    pass


class AuthError(MatrixIntegrationError):
    """Raised when the homeserver rejects the bot's credentials."""

    pass


class TransportError(MatrixIntegrationError):
    """Raised on network, TLS or homeserver failures."""

    pass


class PersistenceError(MarkovBotBaseException):
    """Raised when a database operation fails."""

    def __init__(
        self,
        operation: str,
        original_error: Exception,
        scope: Optional[str] = None,
        message: Optional[str] = None,
    ):
        self.operation = operation
        self.scope = scope
        self.original_error = original_error
        details = f"Database operation '{operation}'"
        if scope is not None:
            details += f" for scope '{scope}'"
        details += f" failed: {original_error}"
        if message:
            super().__init__(f"{message} - Details: {details}")
        else:
            super().__init__(details)


class GenerateError(MarkovBotBaseException):
    """Raised when text generation fails."""

    pass


class EmptyModelError(GenerateError):
    """Raised when a scope has no trained data yet."""

    def __init__(self, scope: str):
        self.scope = scope
        super().__init__(f"No training data for scope '{scope}'")
