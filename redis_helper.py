# redis_helper.py
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import redis.asyncio as redis

from errors import DependencyFailure, UniqueIdentifierViolation
from models import AccessToken, AuthorizationCode, Client, RefreshToken
from repositories import (
    AccessTokenRepositoryInterface, AuthCodeRepositoryInterface, ClientRepositoryInterface,
    RefreshTokenRepositoryInterface,
)

logger = logging.getLogger(__name__)

# Keep documents around for a while after expiry so late presentations still read as revoked.
EXPIRED_DOCUMENT_GRACE_SECONDS = 24 * 60 * 60

COLLECTIONS = {
    'access_token': 'oauth_access_token',
    'authorization_code': 'oauth_authorization_code',
    'client': 'oauth_client',
    'refresh_token': 'oauth_refresh_token',
}


class RedisHelper:
    """
    Document store: every entity is one JSON document under
    ``<prefix>:<collection>:<identifier>``. Revocation lives in a sibling
    ``...:revoked`` key so it can be claimed atomically with SET NX.
    """

    def __init__(self, url=None, key_prefix='oauth', client=None):
        self.url = url
        self.key_prefix = key_prefix
        self._redis = client

    async def connect(self):
        if self._redis is not None:
            return
        self._redis = redis.from_url(self.url, decode_responses=True)
        await self._redis.ping()
        logger.info("Connected to Redis document store")

    async def disconnect(self):
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None
        logger.info("Redis connection closed.")

    def key(self, collection, identifier):
        return f"{self.key_prefix}:{COLLECTIONS[collection]}:{identifier}"

    @asynccontextmanager
    async def client(self):
        if self._redis is None:
            raise DependencyFailure("Redis is not connected")
        try:
            yield self._redis
        except redis.RedisError as e:
            logger.error(f"Redis operation failed: {e}")
            raise DependencyFailure(f"Redis operation failed: {e}") from e

    async def insert_document(self, collection, identifier, document: str, expires_at: datetime = None):
        key = self.key(collection, identifier)
        ttl = None
        if expires_at is not None:
            remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
            ttl = max(1, int(remaining) + EXPIRED_DOCUMENT_GRACE_SECONDS)
        async with self.client() as r:
            created = await r.set(key, document, nx=True, ex=ttl)
        if not created:
            raise UniqueIdentifierViolation(f"{collection} '{identifier}' already exists")

    async def find_document(self, collection, identifier):
        async with self.client() as r:
            return await r.get(self.key(collection, identifier))

    async def claim_revocation(self, collection, identifier):
        """Atomically mark a document revoked. True only for the caller that flipped it."""
        key = self.key(collection, identifier)
        async with self.client() as r:
            ttl = await r.ttl(key)
            if ttl == -2:
                # No document: it already reads as revoked, so leave no marker behind.
                return False
            claimed = await r.set(f"{key}:revoked", 1, nx=True, ex=ttl if ttl > 0 else None)
        return bool(claimed)

    async def is_revoked(self, collection, identifier):
        key = self.key(collection, identifier)
        async with self.client() as r:
            exists, revoked = await r.exists(key), await r.exists(f"{key}:revoked")
        return not exists or bool(revoked)

    async def consume_document(self, collection, identifier):
        document = await self.find_document(collection, identifier)
        if document is None:
            return None
        if not await self.claim_revocation(collection, identifier):
            return None
        return document


class RedisClientRepository(ClientRepositoryInterface):
    def __init__(self, helper: RedisHelper):
        self.helper = helper

    async def get_client(self, client_id: str):
        document = await self.helper.find_document('client', client_id)
        logger.info(f"Fetched OAuth client '{client_id}': {'Found' if document else 'Not Found'}")
        return Client.model_validate_json(document) if document else None

    async def add_client(self, client: Client):
        await self.helper.insert_document('client', client.identifier, client.model_dump_json())
        logger.info(f"Added OAuth client with ID: {client.identifier}")


class RedisAuthCodeRepository(AuthCodeRepositoryInterface):
    def __init__(self, helper: RedisHelper):
        self.helper = helper

    async def persist_new_auth_code(self, auth_code: AuthorizationCode):
        await self.helper.insert_document('authorization_code', auth_code.identifier,
                                          auth_code.model_dump_json(), auth_code.expires_at)

    async def consume_auth_code(self, code_id: str):
        document = await self.helper.consume_document('authorization_code', code_id)
        return AuthorizationCode.model_validate_json(document) if document else None

    async def revoke_auth_code(self, code_id: str):
        await self.helper.claim_revocation('authorization_code', code_id)

    async def is_auth_code_revoked(self, code_id: str):
        return await self.helper.is_revoked('authorization_code', code_id)


class RedisAccessTokenRepository(AccessTokenRepositoryInterface):
    def __init__(self, helper: RedisHelper):
        self.helper = helper

    async def persist_new_access_token(self, access_token: AccessToken):
        await self.helper.insert_document('access_token', access_token.identifier,
                                          access_token.model_dump_json(), access_token.expires_at)

    async def get_access_token(self, token_id: str):
        document = await self.helper.find_document('access_token', token_id)
        if document is None:
            return None
        access_token = AccessToken.model_validate_json(document)
        if await self.helper.is_revoked('access_token', token_id):
            access_token = access_token.model_copy(update={'revoked': True})
        return access_token

    async def revoke_access_token(self, token_id: str):
        await self.helper.claim_revocation('access_token', token_id)

    async def is_access_token_revoked(self, token_id: str):
        return await self.helper.is_revoked('access_token', token_id)


class RedisRefreshTokenRepository(RefreshTokenRepositoryInterface):
    def __init__(self, helper: RedisHelper):
        self.helper = helper

    async def persist_new_refresh_token(self, refresh_token: RefreshToken):
        await self.helper.insert_document('refresh_token', refresh_token.identifier,
                                          refresh_token.model_dump_json(), refresh_token.expires_at)

    async def consume_refresh_token(self, token_id: str):
        document = await self.helper.consume_document('refresh_token', token_id)
        return RefreshToken.model_validate_json(document) if document else None

    async def revoke_refresh_token(self, token_id: str):
        await self.helper.claim_revocation('refresh_token', token_id)

    async def is_refresh_token_revoked(self, token_id: str):
        return await self.helper.is_revoked('refresh_token', token_id)
