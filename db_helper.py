# db_helper.py
import logging
from contextlib import asynccontextmanager

import asyncpg

from credential_manager import CredentialManager
from errors import DependencyFailure, UniqueIdentifierViolation
from models import AccessToken, AuthorizationCode, Client, RefreshToken
from repositories import (
    AccessTokenRepositoryInterface, AuthCodeRepositoryInterface, ClientRepositoryInterface,
    RefreshTokenRepositoryInterface,
)

logger = logging.getLogger(__name__)

TABLES = {
    "oauth_client": """
        CREATE TABLE IF NOT EXISTS oauth_client (
            client_id VARCHAR PRIMARY KEY,
            client_secret VARCHAR,
            name VARCHAR NOT NULL,
            redirect_uris TEXT[] NOT NULL,
            grant_types TEXT[] NOT NULL,
            allowed_scopes TEXT[],
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
    """,
    "oauth_authorization_code": """
        CREATE TABLE IF NOT EXISTS oauth_authorization_code (
            code VARCHAR PRIMARY KEY,
            client_id VARCHAR NOT NULL,
            user_id VARCHAR NOT NULL,
            redirect_uri VARCHAR NOT NULL,
            scopes TEXT[] NOT NULL,
            code_challenge VARCHAR,
            code_challenge_method VARCHAR,
            expires_at TIMESTAMPTZ NOT NULL,
            revoked BOOLEAN NOT NULL DEFAULT FALSE
        );
    """,
    "oauth_access_token": """
        CREATE TABLE IF NOT EXISTS oauth_access_token (
            token VARCHAR PRIMARY KEY,
            client_id VARCHAR NOT NULL,
            user_id VARCHAR,
            scopes TEXT[] NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            revoked BOOLEAN NOT NULL DEFAULT FALSE
        );
    """,
    "oauth_refresh_token": """
        CREATE TABLE IF NOT EXISTS oauth_refresh_token (
            token VARCHAR PRIMARY KEY,
            access_token VARCHAR NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL,
            revoked BOOLEAN NOT NULL DEFAULT FALSE
        );
    """,
}


class DBHelper:
    def __init__(self, credentials=None):
        self.credentials = credentials or CredentialManager.get_db_credentials()
        self.pool = None  # To be initialized in init_db

    async def _create_pool(self, database, max_size=10):
        return await asyncpg.create_pool(
            user=self.credentials['user'],
            password=self.credentials['password'],
            database=database,
            host=self.credentials['host'],
            port=self.credentials['port'],
            min_size=1,
            max_size=max_size
        )

    async def connect_create_if_not_exists(self):
        """
        Open the pool on the configured database, creating the database through 'postgres' first if needed.
        """
        database, user = self.credentials['database'], self.credentials['user']
        logger.info(f"Connecting to database '{database}' as '{user}' at "
                    f"{self.credentials['host']}:{self.credentials['port']}")
        try:
            self.pool = await self._create_pool(database)
            return
        except asyncpg.exceptions.InvalidCatalogNameError:
            logger.warning(f"Database '{database}' does not exist, creating it")

        sys_pool = await self._create_pool('postgres', max_size=1)
        try:
            async with sys_pool.acquire() as conn:
                await conn.execute(f'CREATE DATABASE "{database}" OWNER "{user}"')
        finally:
            await sys_pool.close()
        self.pool = await self._create_pool(database)
        logger.info(f"Created database '{database}' owned by '{user}'")

    async def init_db(self):
        """
        Initialize the database by ensuring it exists and creating the OAuth tables.
        """
        await self.connect_create_if_not_exists()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for table_name, create_stmt in TABLES.items():
                    logger.info(f"Creating table '{table_name}' if it does not exist.")
                    await conn.execute(create_stmt)
        logger.info("Database initialization completed successfully.")

    @asynccontextmanager
    async def connection(self):
        """
        Acquire a connection from the pool, translating driver errors into DependencyFailure.
        """
        if self.pool is None:
            raise DependencyFailure("Database pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.exceptions.UniqueViolationError as e:
            raise UniqueIdentifierViolation(str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Database operation failed: {e}")
            raise DependencyFailure(f"Database operation failed: {e}") from e

    async def close_pool(self):
        """
        Close the connection pool.
        """
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed.")


class PgClientRepository(ClientRepositoryInterface):
    def __init__(self, db_helper: DBHelper):
        self.db = db_helper

    async def get_client(self, client_id: str):
        async with self.db.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM oauth_client WHERE client_id = $1", client_id)
        logger.info(f"Fetched OAuth client '{client_id}': {'Found' if row else 'Not Found'}")
        if not row:
            return None
        return Client(
            identifier=row['client_id'],
            secret=row['client_secret'],
            name=row['name'],
            redirect_uris=row['redirect_uris'],
            grant_types=row['grant_types'],
            allowed_scopes=row['allowed_scopes'],
        )

    async def add_client(self, client: Client):
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO oauth_client (client_id, client_secret, name, redirect_uris, grant_types, allowed_scopes)
                VALUES ($1, $2, $3, $4, $5, $6)
            """, client.identifier, client.secret, client.name, client.redirect_uris,
                client.grant_types,
                client.allowed_scopes)
        logger.info(f"Added OAuth client with ID: {client.identifier}")


class PgAuthCodeRepository(AuthCodeRepositoryInterface):
    def __init__(self, db_helper: DBHelper):
        self.db = db_helper

    async def persist_new_auth_code(self, auth_code: AuthorizationCode):
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO oauth_authorization_code (
                    code, client_id, user_id, redirect_uri, scopes, code_challenge, code_challenge_method, expires_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """, auth_code.identifier, auth_code.client_id, auth_code.user_id, auth_code.redirect_uri,
                auth_code.scopes, auth_code.code_challenge, auth_code.code_challenge_method,
                auth_code.expires_at)

    async def consume_auth_code(self, code_id: str):
        # The WHERE clause makes this a compare-and-swap: only one caller sees the row.
        async with self.db.connection() as conn:
            row = await conn.fetchrow("""
                UPDATE oauth_authorization_code SET revoked = TRUE
                WHERE code = $1 AND revoked = FALSE
                RETURNING *
            """, code_id)
        if not row:
            return None
        return AuthorizationCode(
            identifier=row['code'],
            client_id=row['client_id'],
            user_id=row['user_id'],
            redirect_uri=row['redirect_uri'],
            scopes=row['scopes'],
            code_challenge=row['code_challenge'],
            code_challenge_method=row['code_challenge_method'],
            expires_at=row['expires_at'],
        )

    async def revoke_auth_code(self, code_id: str):
        async with self.db.connection() as conn:
            await conn.execute("UPDATE oauth_authorization_code SET revoked = TRUE WHERE code = $1", code_id)
        logger.info("Revoked authorization code")

    async def is_auth_code_revoked(self, code_id: str):
        async with self.db.connection() as conn:
            revoked = await conn.fetchval("SELECT revoked FROM oauth_authorization_code WHERE code = $1", code_id)
        return revoked is not False


class PgAccessTokenRepository(AccessTokenRepositoryInterface):
    def __init__(self, db_helper: DBHelper):
        self.db = db_helper

    async def persist_new_access_token(self, access_token: AccessToken):
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO oauth_access_token (token, client_id, user_id, scopes, expires_at)
                VALUES ($1, $2, $3, $4, $5)
            """, access_token.identifier, access_token.client_id, access_token.user_id,
                access_token.scopes, access_token.expires_at)

    async def get_access_token(self, token_id: str):
        async with self.db.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM oauth_access_token WHERE token = $1", token_id)
        if not row:
            return None
        return AccessToken(
            identifier=row['token'],
            client_id=row['client_id'],
            user_id=row['user_id'],
            scopes=row['scopes'],
            expires_at=row['expires_at'],
            revoked=row['revoked'],
        )

    async def revoke_access_token(self, token_id: str):
        async with self.db.connection() as conn:
            await conn.execute("UPDATE oauth_access_token SET revoked = TRUE WHERE token = $1", token_id)

    async def is_access_token_revoked(self, token_id: str):
        async with self.db.connection() as conn:
            revoked = await conn.fetchval("SELECT revoked FROM oauth_access_token WHERE token = $1", token_id)
        return revoked is not False


class PgRefreshTokenRepository(RefreshTokenRepositoryInterface):
    def __init__(self, db_helper: DBHelper):
        self.db = db_helper

    async def persist_new_refresh_token(self, refresh_token: RefreshToken):
        async with self.db.connection() as conn:
            await conn.execute("""
                INSERT INTO oauth_refresh_token (token, access_token, expires_at) VALUES ($1, $2, $3)
            """, refresh_token.identifier, refresh_token.access_token_id, refresh_token.expires_at)

    async def consume_refresh_token(self, token_id: str):
        async with self.db.connection() as conn:
            row = await conn.fetchrow("""
                UPDATE oauth_refresh_token SET revoked = TRUE
                WHERE token = $1 AND revoked = FALSE
                RETURNING *
            """, token_id)
        if not row:
            return None
        return RefreshToken(
            identifier=row['token'],
            access_token_id=row['access_token'],
            expires_at=row['expires_at'],
        )

    async def revoke_refresh_token(self, token_id: str):
        async with self.db.connection() as conn:
            await conn.execute("UPDATE oauth_refresh_token SET revoked = TRUE WHERE token = $1", token_id)

    async def is_refresh_token_revoked(self, token_id: str):
        async with self.db.connection() as conn:
            revoked = await conn.fetchval("SELECT revoked FROM oauth_refresh_token WHERE token = $1", token_id)
        return revoked is not False
