"""
Matrix Authentication Handler

Handles Matrix client authentication, token reuse, and session persistence.
Credential rejections surface as AuthError, everything that looks like the
network or the homeserver misbehaving surfaces as TransportError.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
from nio import AsyncClient, LoginError, LoginResponse, WhoamiResponse
from nio.exceptions import LocalProtocolError

from ....exceptions import AuthError, TransportError

logger = logging.getLogger(__name__)

NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, LocalProtocolError)

# Error codes that mean the credentials themselves were refused
AUTH_REJECTION_CODES = {"M_FORBIDDEN", "M_USER_DEACTIVATED", "M_INVALID_USERNAME"}


class MatrixAuthHandler:
    """Handles Matrix authentication and token management."""

    def __init__(
        self,
        homeserver: str,
        user_id: str,
        password: str,
        store_path: Path,
        device_name: str = "markovbot",
    ):
        self.homeserver = homeserver
        self.user_id = user_id
        self.password = password
        self.device_name = device_name
        self.store_path = store_path
        self.token_file = store_path / "matrix_token.json"

    def load_token(self) -> Optional[Dict[str, Any]]:
        """Load saved token data if it exists and belongs to this account."""
        if not self.token_file.exists():
            logger.debug("MatrixAuthHandler: No token file found")
            return None

        try:
            with open(self.token_file, 'r') as f:
                token_data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"MatrixAuthHandler: Error loading token file: {e}")
            return None

        if not token_data.get('access_token'):
            logger.warning("MatrixAuthHandler: Token file exists but no access_token found")
            return None
        if token_data.get('user_id') != self.user_id or token_data.get('homeserver') != self.homeserver:
            logger.info("MatrixAuthHandler: Saved token belongs to a different account, ignoring it")
            return None

        logger.debug("MatrixAuthHandler: Loaded existing token")
        return token_data

    def save_token(self, access_token: str, device_id: str):
        """Save access token and device ID to file."""
        token_data = {
            'access_token': access_token,
            'device_id': device_id,
            'user_id': self.user_id,
            'homeserver': self.homeserver,
            'saved_at': time.time()
        }
        try:
            self.token_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.token_file, 'w') as f:
                json.dump(token_data, f, indent=2)
            os.chmod(self.token_file, 0o600)
            logger.info("MatrixAuthHandler: Token saved successfully")
        except OSError as e:
            # A missing token file only costs a password login next time.
            logger.error(f"MatrixAuthHandler: Error saving token: {e}")

    def clear_token(self):
        """Clear saved token file."""
        if self.token_file.exists():
            try:
                self.token_file.unlink()
                logger.info("MatrixAuthHandler: Cleared token file")
            except OSError as e:
                logger.error(f"MatrixAuthHandler: Error clearing token file: {e}")

    async def verify_token(self, client: AsyncClient) -> bool:
        """Check that the client's access token is still accepted."""
        try:
            response = await client.whoami()
        except NETWORK_ERRORS as e:
            raise TransportError(f"Token verification failed: {e}") from e

        if isinstance(response, WhoamiResponse) and response.user_id == self.user_id:
            logger.debug("MatrixAuthHandler: Token verification successful")
            return True
        logger.warning(f"MatrixAuthHandler: Token verification failed: {response}")
        return False

    async def login(self, client: AsyncClient) -> str:
        """Password login. Returns the access token."""
        logger.info(f"MatrixAuthHandler: Logging in as {self.user_id}")
        try:
            response = await client.login(self.password, device_name=self.device_name)
        except NETWORK_ERRORS as e:
            raise TransportError(f"Login request failed: {e}") from e

        if isinstance(response, LoginResponse):
            logger.info("MatrixAuthHandler: Login successful")
            self.save_token(response.access_token, response.device_id)
            return response.access_token

        if isinstance(response, LoginError) and response.status_code in AUTH_REJECTION_CODES:
            raise AuthError(f"Login rejected for {self.user_id}: {response.status_code} {response.message}")
        raise TransportError(f"Login failed for {self.user_id}: {response}")

    async def authenticate(self, client: AsyncClient) -> str:
        """Reuse a saved token when it is still valid, otherwise log in.

        Returns the authenticated user id.
        """
        token_data = self.load_token()
        if token_data:
            client.user_id = self.user_id
            client.device_id = token_data.get('device_id')
            client.access_token = token_data['access_token']

            if await self.verify_token(client):
                logger.debug("MatrixAuthHandler: Using existing valid token")
                return self.user_id

            logger.warning("MatrixAuthHandler: Existing token invalid, re-authenticating")
            self.clear_token()
            client.access_token = ""

        await self.login(client)
        return self.user_id
