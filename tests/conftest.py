# Shared fixtures: in-memory repositories, storage backends, a controllable clock and a wired AuthorizationServer.

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs, urlsplit

import asyncpg
import fakeredis
import pytest

from AuthorizationCodeGrant import AuthorizationCodeGrant
from RefreshTokenGrant import RefreshTokenGrant
from authorization_server import AuthorizationServer
from db_helper import DBHelper, PgAccessTokenRepository, PgAuthCodeRepository, PgClientRepository, PgRefreshTokenRepository
from durations import parse_duration
from errors import UniqueIdentifierViolation
from models import Client, User
from redis_helper import (
    RedisAccessTokenRepository, RedisAuthCodeRepository, RedisClientRepository, RedisHelper,
    RedisRefreshTokenRepository,
)
from repositories import (
    AccessTokenRepositoryInterface, AuthCodeRepositoryInterface, ClientRepositoryInterface,
    RefreshTokenRepositoryInterface, hash_client_secret,
)
from scopes import CatalogScopeRepository

SIGNING_KEY = "test-signing-key-0123456789abcdef0123456789"
APP2_SECRET = "app2-secret"


class FrozenClock:
    def __init__(self, now=None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class InMemoryClientRepository(ClientRepositoryInterface):
    def __init__(self, clients=()):
        self.clients = {client.identifier: client for client in clients}

    async def get_client(self, client_id):
        return self.clients.get(client_id)

    async def add_client(self, client):
        if client.identifier in self.clients:
            raise UniqueIdentifierViolation(client.identifier)
        self.clients[client.identifier] = client


class _InMemoryTokens:
    """No awaits between check and set, so consumption is atomic on the event loop."""

    def __init__(self):
        self.items = {}

    def persist(self, entity):
        if entity.identifier in self.items:
            raise UniqueIdentifierViolation(entity.identifier)
        self.items[entity.identifier] = entity

    def consume(self, identifier):
        entity = self.items.get(identifier)
        if entity is None or entity.revoked:
            return None
        self.items[identifier] = entity.model_copy(update={"revoked": True})
        return entity

    def revoke(self, identifier):
        entity = self.items.get(identifier)
        if entity is not None:
            self.items[identifier] = entity.model_copy(update={"revoked": True})

    def is_revoked(self, identifier):
        entity = self.items.get(identifier)
        return entity is None or entity.revoked


class InMemoryAuthCodeRepository(_InMemoryTokens, AuthCodeRepositoryInterface):
    async def persist_new_auth_code(self, auth_code):
        self.persist(auth_code)

    async def consume_auth_code(self, code_id):
        return self.consume(code_id)

    async def revoke_auth_code(self, code_id):
        self.revoke(code_id)

    async def is_auth_code_revoked(self, code_id):
        return self.is_revoked(code_id)


class InMemoryAccessTokenRepository(_InMemoryTokens, AccessTokenRepositoryInterface):
    async def persist_new_access_token(self, access_token):
        self.persist(access_token)

    async def get_access_token(self, token_id):
        return self.items.get(token_id)

    async def revoke_access_token(self, token_id):
        self.revoke(token_id)

    async def is_access_token_revoked(self, token_id):
        return self.is_revoked(token_id)


class InMemoryRefreshTokenRepository(_InMemoryTokens, RefreshTokenRepositoryInterface):
    async def persist_new_refresh_token(self, refresh_token):
        self.persist(refresh_token)

    async def consume_refresh_token(self, token_id):
        return self.consume(token_id)

    async def revoke_refresh_token(self, token_id):
        self.revoke(token_id)

    async def is_refresh_token_revoked(self, token_id):
        return self.is_revoked(token_id)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def public_client():
    return Client(identifier="app1", name="Example App", redirect_uris=["https://example.com/cb"])


@pytest.fixture
def confidential_client():
    return Client(
        identifier="app2",
        secret=hash_client_secret(APP2_SECRET),
        name="Confidential App",
        redirect_uris=["https://app2.example/cb", "https://app2.example/alt"],
    )


@pytest.fixture
def repositories(public_client, confidential_client):
    return SimpleNamespace(
        clients=InMemoryClientRepository([public_client, confidential_client]),
        scopes=CatalogScopeRepository(),
        auth_codes=InMemoryAuthCodeRepository(),
        access_tokens=InMemoryAccessTokenRepository(),
        refresh_tokens=InMemoryRefreshTokenRepository(),
    )


def make_server(repositories, clock, with_refresh_tokens=True, **grant_options):
    server = AuthorizationServer(
        client_repository=repositories.clients,
        access_token_repository=repositories.access_tokens,
        scope_repository=repositories.scopes,
        signing_key=SIGNING_KEY,
        refresh_token_repository=repositories.refresh_tokens if with_refresh_tokens else None,
        access_token_ttl=parse_duration("P20Y"),
        refresh_token_ttl=parse_duration("P20Y"),
        clock=clock,
    )
    server.enable_grant_type(AuthorizationCodeGrant(repositories.auth_codes, parse_duration("PT10M"), **grant_options))
    if with_refresh_tokens:
        server.enable_grant_type(RefreshTokenGrant())
    return server


@pytest.fixture
def server(repositories, clock):
    return make_server(repositories, clock)


@pytest.fixture
def obtain_code(server):
    async def _obtain_code(client_id="app1", redirect_uri="https://example.com/cb",
                           scope="preference:read", user_id="alice", **extra):
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": "xyz",
            **extra,
        }
        auth_request = await server.validate_authorization_request(params)
        auth_request.user = User(identifier=user_id)
        auth_request.approved = True
        response = await server.complete_authorization_request(auth_request)
        return parse_qs(urlsplit(response.headers["location"]).query)["code"][0]

    return _obtain_code


@pytest.fixture
def obtain_tokens(server, obtain_code):
    async def _obtain_tokens(scope="preference:read email:read"):
        code = await obtain_code(scope=scope)
        return await server.issue_token({
            "grant_type": "authorization_code",
            "client_id": "app1",
            "redirect_uri": "https://example.com/cb",
            "code": code,
        })

    return _obtain_tokens


@pytest.fixture
def server_factory(repositories, clock):
    def _server_factory(**kwargs):
        return make_server(repositories, clock, **kwargs)

    return _server_factory


# Storage backends: fakeredis for Redis, an in-process asyncpg pool double for PostgreSQL.

def _normalize_sql(query):
    return " ".join(query.split())


class FakePgConnection:
    """Answers the statements db_helper issues, against dict-backed tables keyed by primary key."""

    def __init__(self, pool):
        self.pool = pool

    def _rows(self, table):
        return self.pool.tables.setdefault(table, {})

    def _update(self, query, key):
        match = re.match(r"UPDATE (\w+) SET revoked = TRUE WHERE \w+ = \$1( AND revoked = FALSE)?", query)
        row = self._rows(match.group(1)).get(key)
        if row is None or (match.group(2) and row["revoked"]):
            return None
        row["revoked"] = True
        return dict(row)

    async def execute(self, query, *args):
        query = _normalize_sql(query)
        self.pool.statements.append(query)
        if query.startswith("INSERT INTO"):
            match = re.match(r"INSERT INTO (\w+) \(([^)]*)\)", query)
            rows = self._rows(match.group(1))
            if args[0] in rows:
                raise asyncpg.exceptions.UniqueViolationError(
                    f'duplicate key value violates unique constraint "{match.group(1)}_pkey"'
                )
            row = dict(zip((column.strip() for column in match.group(2).split(",")), args))
            row.setdefault("revoked", False)
            rows[args[0]] = row
        elif query.startswith("UPDATE"):
            self._update(query, args[0])
        return "OK"

    async def fetchrow(self, query, *args):
        query = _normalize_sql(query)
        self.pool.statements.append(query)
        if query.startswith("UPDATE"):
            return self._update(query, args[0])
        match = re.match(r"SELECT \* FROM (\w+) WHERE \w+ = \$1", query)
        row = self._rows(match.group(1)).get(args[0])
        return dict(row) if row is not None else None

    async def fetchval(self, query, *args):
        query = _normalize_sql(query)
        self.pool.statements.append(query)
        match = re.match(r"SELECT (\w+) FROM (\w+) WHERE \w+ = \$1", query)
        row = self._rows(match.group(2)).get(args[0])
        return row[match.group(1)] if row is not None else None

    @asynccontextmanager
    async def transaction(self):
        yield


class FakePgPool:
    def __init__(self):
        self.tables = {}
        self.statements = []
        self.error = None
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        # Yield to the loop like a real acquire so concurrent callers interleave.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        yield FakePgConnection(self)

    async def close(self):
        self.closed = True


DB_CREDENTIALS = {"user": "oauth", "password": "pw", "database": "OAUTHDB", "host": "localhost", "port": 5432}


@pytest.fixture
def pg_pool():
    return FakePgPool()


@pytest.fixture
def pg_helper(pg_pool):
    helper = DBHelper(credentials=dict(DB_CREDENTIALS))
    helper.pool = pg_pool
    return helper


@pytest.fixture
def redis_helper():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisHelper(key_prefix="test", client=client)


@pytest.fixture(params=["redis", "postgres"])
def stores(request):
    if request.param == "redis":
        helper = request.getfixturevalue("redis_helper")
        return SimpleNamespace(
            backend="redis",
            helper=helper,
            clients=RedisClientRepository(helper),
            auth_codes=RedisAuthCodeRepository(helper),
            access_tokens=RedisAccessTokenRepository(helper),
            refresh_tokens=RedisRefreshTokenRepository(helper),
        )
    helper = request.getfixturevalue("pg_helper")
    return SimpleNamespace(
        backend="postgres",
        helper=helper,
        clients=PgClientRepository(helper),
        auth_codes=PgAuthCodeRepository(helper),
        access_tokens=PgAccessTokenRepository(helper),
        refresh_tokens=PgRefreshTokenRepository(helper),
    )
