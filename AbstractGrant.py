# AbstractGrant.py
import base64
import binascii
import logging
import secrets
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import unquote_plus

from durations import Duration
from errors import InvalidClient, InvalidRequest, ServerError, UniqueIdentifierViolation
from models import AccessToken, Client, RefreshToken, Scope

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_GENERATION_ATTEMPTS = 10


def generate_unique_identifier(length: int = 40) -> str:
    return secrets.token_hex(length)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbstractGrant:
    """
    Behaviour shared by every grant engine. Repositories, TTLs and the clock
    are injected by the AuthorizationServer when the grant is enabled.
    """

    grant_type = None

    def __init__(self):
        self.client_repository = None
        self.scope_repository = None
        self.access_token_repository = None
        self.refresh_token_repository = None
        self.access_token_ttl: Optional[Duration] = None
        self.refresh_token_ttl: Optional[Duration] = None
        self.clock = utcnow

    def can_respond_to_access_token_request(self, params) -> bool:
        return params.get('grant_type') == self.grant_type

    def can_respond_to_authorization_request(self, params) -> bool:
        return False

    async def respond_to_access_token_request(self, params, authorization=None):
        raise NotImplementedError

    def get_client_credentials(self, params, authorization=None):
        """Client id and secret from HTTP Basic auth, falling back to the form body."""
        client_id = params.get('client_id')
        client_secret = params.get('client_secret')
        if authorization and authorization.lower().startswith('basic '):
            try:
                decoded = base64.b64decode(authorization[6:].strip()).decode('utf-8')
            except (binascii.Error, UnicodeDecodeError):
                raise InvalidClient()
            if ':' not in decoded:
                raise InvalidClient()
            # RFC 6749 section 2.3.1: both parts are form-urlencoded before base64
            basic_id, basic_secret = (unquote_plus(part) for part in decoded.split(':', 1))
            client_id = basic_id or client_id
            client_secret = basic_secret or client_secret
        if not client_id:
            raise InvalidRequest('client_id')
        return client_id, client_secret

    async def validate_client(self, params, authorization=None) -> Client:
        client_id, client_secret = self.get_client_credentials(params, authorization)
        client = await self.client_repository.find_client(client_id, self.grant_type, client_secret)
        if client is None:
            logger.warning(f"Client authentication failed for '{client_id}' ({self.grant_type})")
            raise InvalidClient()
        return client

    async def issue_access_token(self, client: Client, user_id: Optional[str], scopes: List[Scope]) -> AccessToken:
        expires_at = self.access_token_ttl.add_to(self.clock())
        for _ in range(MAX_IDENTIFIER_GENERATION_ATTEMPTS):
            access_token = AccessToken(
                identifier=generate_unique_identifier(),
                client_id=client.identifier,
                user_id=user_id,
                scopes=[scope.identifier for scope in scopes],
                expires_at=expires_at,
            )
            try:
                await self.access_token_repository.persist_new_access_token(access_token)
                return access_token
            except UniqueIdentifierViolation:
                logger.warning("Access token identifier collision, regenerating")
        raise ServerError("Could not generate a unique access token identifier.")

    async def issue_refresh_token(self, access_token: AccessToken) -> RefreshToken:
        expires_at = self.refresh_token_ttl.add_to(self.clock())
        for _ in range(MAX_IDENTIFIER_GENERATION_ATTEMPTS):
            refresh_token = RefreshToken(
                identifier=generate_unique_identifier(),
                access_token_id=access_token.identifier,
                expires_at=expires_at,
            )
            try:
                await self.refresh_token_repository.persist_new_refresh_token(refresh_token)
                return refresh_token
            except UniqueIdentifierViolation:
                logger.warning("Refresh token identifier collision, regenerating")
        raise ServerError("Could not generate a unique refresh token identifier.")

    async def issue_token_pair(self, client: Client, user_id: Optional[str], scopes: List[Scope]):
        access_token = await self.issue_access_token(client, user_id, scopes)
        refresh_token = None
        if self.refresh_token_ttl is not None and self.refresh_token_repository is not None:
            refresh_token = await self.issue_refresh_token(access_token)
        return access_token, refresh_token
