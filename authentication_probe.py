# authentication_probe.py
import logging
from abc import ABC, abstractmethod

import httpx

from errors import AuthenticationFailure, DependencyFailure
from models import User

logger = logging.getLogger(__name__)


class AuthenticationProbe(ABC):
    """Turns the platform's session credential into a user identity."""

    @abstractmethod
    async def verify(self, session_token: str) -> User:
        """Return the session's user or raise AuthenticationFailure."""


class HttpAuthenticationProbe(AuthenticationProbe):
    def __init__(self, check_authentication_url: str, cookie_name: str, timeout: float = 5.0, transport=None):
        self.check_authentication_url = check_authentication_url
        self.cookie_name = cookie_name
        self.timeout = timeout
        self.transport = transport

    async def verify(self, session_token: str) -> User:
        headers = {
            'Accept': 'application/vnd.lichess.v3+json',
            'User-Agent': 'lidraughts-oauth-server',
            # Sent raw: the platform cookie value must not be re-encoded.
            'Cookie': f"{self.cookie_name}={session_token}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.check_authentication_url, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Authentication check timed out after {self.timeout}s")
            raise DependencyFailure("Authentication check timed out") from e
        except httpx.RequestError as e:
            logger.error(f"Authentication check request failed: {e}")
            raise DependencyFailure(f"Authentication check failed: {e}") from e

        if response.is_error:
            logger.info(f"Authentication check rejected session (HTTP {response.status_code})")
            raise AuthenticationFailure(f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise AuthenticationFailure("Authentication check did not return JSON")

        if not isinstance(data, dict) or 'error' in data:
            raise AuthenticationFailure("Authentication check returned an error")

        user_id = data.get('id')
        if not user_id:
            raise AuthenticationFailure("Authentication check returned no user id")

        return User(identifier=str(user_id), username=data.get('username'))
