# main.py
import sys
import logging

from fastapi import FastAPI, Request, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from AuthorizationCodeGrant import AuthorizationCodeGrant
from RefreshTokenGrant import RefreshTokenGrant
from authentication_probe import HttpAuthenticationProbe
from authorization_server import AuthorizationServer
from credential_manager import CredentialManager
from db_helper import (
    DBHelper, PgAccessTokenRepository, PgAuthCodeRepository, PgClientRepository, PgRefreshTokenRepository,
)
from errors import UniqueIdentifierViolation
from models import GRANT_TYPE_CLIENT_CREDENTIALS, Client
from oauth_authorize import OAuthAuthorize
from redis_helper import (
    RedisAccessTokenRepository, RedisAuthCodeRepository, RedisClientRepository, RedisHelper, RedisRefreshTokenRepository,
)
from repositories import hash_client_secret
from scopes import CatalogScopeRepository

# Configure logging to write to stdout only
logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s %(levelname)s %(name)s %(message)s',
                    handlers=[
                        logging.StreamHandler(sys.stdout)
                    ])


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get('origin')
        logging.info(f"{request.method} {request.url.path} from origin: {origin}")
        response = await call_next(request)
        logging.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response


app = FastAPI(title="OAuth authorization server")

app.add_middleware(RequestLoggingMiddleware)

# Browser-based public clients call /token directly
app.add_middleware(
    CORSMiddleware,
    allow_origins=CredentialManager.get_cors_origins(),
    allow_credentials=False,
    allow_methods=["POST"],
    allow_headers=["Authorization", "Content-Type"],
)

# Set up on startup
storage = None
authorization_server = None
oauth_authorize = None


def build_repositories(backend):
    """Return (storage handle, client, auth code, access token, refresh token repositories)."""
    if backend == 'redis':
        settings = CredentialManager.get_redis_settings()
        helper = RedisHelper(url=settings['url'], key_prefix=settings['key_prefix'])
        return (helper, RedisClientRepository(helper), RedisAuthCodeRepository(helper),
                RedisAccessTokenRepository(helper), RedisRefreshTokenRepository(helper))

    helper = DBHelper()
    return (helper, PgClientRepository(helper), PgAuthCodeRepository(helper),
            PgAccessTokenRepository(helper), PgRefreshTokenRepository(helper))


def build_authorization_server(client_repository, auth_code_repository, access_token_repository,
                               refresh_token_repository, scope_repository=None):
    grants = CredentialManager.get_grant_settings()
    ttls = CredentialManager.get_token_ttls()

    server = AuthorizationServer(
        client_repository=client_repository,
        access_token_repository=access_token_repository,
        scope_repository=scope_repository or CatalogScopeRepository(),
        signing_key=CredentialManager.get_signing_key(),
        refresh_token_repository=refresh_token_repository if grants['refresh_token'] else None,
        access_token_ttl=ttls['access_token'],
        refresh_token_ttl=ttls['refresh_token'],
        dependency_timeout=CredentialManager.get_dependency_timeout(),
    )
    if grants['auth_code']:
        server.enable_grant_type(AuthorizationCodeGrant(
            auth_code_repository,
            ttls['auth_code'],
            require_code_challenge_for_public_clients=grants['require_code_challenge_for_public_clients'],
        ))
    if grants['refresh_token']:
        server.enable_grant_type(RefreshTokenGrant())
    if grants['client_credentials']:
        logging.warning(f"GRANT_ENABLED_CLIENT_CREDENTIALS is set but the {GRANT_TYPE_CLIENT_CREDENTIALS} grant is not offered")
    return server


def build_oauth_authorize(server):
    settings = CredentialManager.get_authentication_settings()
    probe = HttpAuthenticationProbe(
        check_authentication_url=settings['check_authentication_url'],
        cookie_name=settings['authenticate_cookie'],
        timeout=settings['timeout'],
    )
    return OAuthAuthorize(
        authenticate_url=settings['authenticate_url'],
        authentication_cookie=settings['authenticate_cookie'],
        authentication_probe=probe,
        oauth_server=server,
        consent_template=settings['consent_template'],
    )


async def seed_clients(client_repository):
    for entry in CredentialManager.get_seed_clients():
        client_id = entry['client_id']
        if await client_repository.get_client(client_id):
            continue
        secret = entry.get('client_secret')
        client = Client(
            identifier=client_id,
            secret=hash_client_secret(secret) if secret else None,
            name=entry.get('name', client_id),
            redirect_uris=entry['redirect_uris'],
            grant_types=entry.get('grant_types', ['authorization_code', 'refresh_token']),
            allowed_scopes=entry.get('allowed_scopes'),
        )
        try:
            await client_repository.add_client(client)
        except UniqueIdentifierViolation:
            logging.warning(f"OAuth client '{client_id}' already exists.")


@app.on_event("startup")
async def startup():
    global storage, authorization_server, oauth_authorize
    backend = CredentialManager.get_repository_backend()
    storage, clients, auth_codes, access_tokens, refresh_tokens = build_repositories(backend)
    if backend == 'redis':
        await storage.connect()
    else:
        await storage.init_db()
    await seed_clients(clients)
    authorization_server = build_authorization_server(clients, auth_codes, access_tokens, refresh_tokens)
    oauth_authorize = build_oauth_authorize(authorization_server)
    logging.info(f"Authorization server ready ({backend} repositories)")


@app.on_event("shutdown")
async def shutdown():
    if storage is None:
        return
    if hasattr(storage, 'close_pool'):
        await storage.close_pool()
    else:
        await storage.disconnect()


def get_authorization_server():
    if authorization_server is None:
        raise HTTPException(status_code=503, detail="Authorization server is not ready")
    return authorization_server


def get_oauth_authorize():
    if oauth_authorize is None:
        raise HTTPException(status_code=503, detail="Authorization server is not ready")
    return oauth_authorize


# Routes

@app.api_route("/authorize", methods=["GET", "POST"])
async def authorize(request: Request, bridge: OAuthAuthorize = Depends(get_oauth_authorize)):
    return await bridge.process(request)


@app.post("/token")
async def token(request: Request, server: AuthorizationServer = Depends(get_authorization_server)):
    form = await request.form()
    params = {key: value for key, value in form.items() if isinstance(value, str)}
    logging.info(f"Received /token request - grant_type: {params.get('grant_type')}, client_id: {params.get('client_id')}")
    return await server.respond_to_access_token_request(params, request.headers.get('authorization'))
