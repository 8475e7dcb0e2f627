# authorization_server.py
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

import jwt
from fastapi.responses import JSONResponse, RedirectResponse

from AbstractGrant import AbstractGrant, utcnow
from durations import Duration
from errors import (
    DependencyFailure, InvalidRequest, ProtocolError, ServerError, UnsupportedGrantType, UnsupportedResponseType,
)
from models import AuthorizationRequest, TokenResponse, User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
CONSENT_TOKEN_AUDIENCE = "oauth-consent"
CONSENT_TOKEN_TTL = timedelta(minutes=10)
NO_CACHE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class AuthorizationServer:
    """
    Dispatches authorization and token requests to the enabled grant engines.
    Holds the signing key and the TTL policy; owns no entity state.
    """

    def __init__(self, client_repository, access_token_repository, scope_repository,
                 signing_key: str, refresh_token_repository=None,
                 access_token_ttl: Duration = Duration(years=20),
                 refresh_token_ttl: Duration = Duration(years=20),
                 dependency_timeout: Optional[float] = 10.0,
                 clock=utcnow):
        if not signing_key:
            raise ValueError("A signing key is required")
        self.client_repository = client_repository
        self.access_token_repository = access_token_repository
        self.scope_repository = scope_repository
        self.refresh_token_repository = refresh_token_repository
        self.signing_key = signing_key
        self.default_access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.dependency_timeout = dependency_timeout
        self.clock = clock
        self.enabled_grant_types: Dict[str, AbstractGrant] = {}

    def enable_grant_type(self, grant: AbstractGrant, access_token_ttl: Optional[Duration] = None):
        grant.client_repository = self.client_repository
        grant.access_token_repository = self.access_token_repository
        grant.scope_repository = self.scope_repository
        grant.refresh_token_repository = self.refresh_token_repository
        grant.access_token_ttl = access_token_ttl or self.default_access_token_ttl
        grant.refresh_token_ttl = self.refresh_token_ttl if self.refresh_token_repository else None
        grant.clock = self.clock
        self.enabled_grant_types[grant.grant_type] = grant
        logger.info(f"Enabled grant type '{grant.grant_type}'")

    async def _call(self, awaitable):
        """Await a repository-bound operation under the configured timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.dependency_timeout)
        except asyncio.TimeoutError as e:
            raise DependencyFailure(f"Storage did not answer within {self.dependency_timeout} seconds") from e

    # Authorization endpoint

    async def validate_authorization_request(self, params) -> AuthorizationRequest:
        for grant in self.enabled_grant_types.values():
            if grant.can_respond_to_authorization_request(params):
                return await self._call(grant.validate_authorization_request(params))
        raise UnsupportedResponseType()

    async def complete_authorization_request(self, auth_request: AuthorizationRequest) -> RedirectResponse:
        grant = self.enabled_grant_types.get(auth_request.grant_type)
        if grant is None:
            raise UnsupportedGrantType()
        redirect_url = await self._call(grant.complete_authorization_request(auth_request))
        return RedirectResponse(url=redirect_url, status_code=302)

    # Token endpoint

    async def issue_token(self, params, authorization=None) -> TokenResponse:
        grant_type = params.get('grant_type')
        if not grant_type:
            raise InvalidRequest('grant_type')
        for grant in self.enabled_grant_types.values():
            if grant.can_respond_to_access_token_request(params):
                return await self._call(grant.respond_to_access_token_request(params, authorization))
        logger.warning(f"Unsupported grant_type: {grant_type}")
        raise UnsupportedGrantType()

    async def respond_to_access_token_request(self, params, authorization=None) -> JSONResponse:
        try:
            token = await self.issue_token(params, authorization)
        except ProtocolError as e:
            response = e.to_json_response()
        except DependencyFailure as e:
            logger.error(f"Token request failed on a dependency: {e}")
            response = ServerError().to_json_response()
        except Exception:
            logger.exception("Unexpected failure while handling token request")
            response = ServerError().to_json_response()
        else:
            response = JSONResponse(token.model_dump(exclude_none=True))
        response.headers.update(NO_CACHE_HEADERS)
        return response

    # Consent token binding the GET consent page to the POST decision

    def issue_consent_token(self, auth_request: AuthorizationRequest, user: User) -> str:
        now = self.clock()
        claims = {
            "sub": user.identifier,
            "aud": CONSENT_TOKEN_AUDIENCE,
            "cid": auth_request.client.identifier,
            "uri": auth_request.redirect_uri,
            "scp": auth_request.scope_identifiers,
            "st": auth_request.state,
            "iat": now,
            "exp": now + CONSENT_TOKEN_TTL,
        }
        return jwt.encode(claims, self.signing_key, algorithm=ALGORITHM)

    def verify_consent_token(self, token: Optional[str], auth_request: AuthorizationRequest, user: User):
        if not token:
            raise InvalidRequest('consent_token')
        try:
            # Expiry is checked against the server clock below, not the wall clock.
            claims = jwt.decode(token, self.signing_key, algorithms=[ALGORITHM], audience=CONSENT_TOKEN_AUDIENCE,
                                options={"verify_exp": False, "verify_iat": False, "require": ["exp"]})
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected consent token: {e}")
            raise InvalidRequest('consent_token')
        if claims["exp"] <= self.clock().timestamp():
            logger.warning("Rejected expired consent token")
            raise InvalidRequest('consent_token')
        expected = {
            "sub": user.identifier,
            "cid": auth_request.client.identifier,
            "uri": auth_request.redirect_uri,
            "scp": auth_request.scope_identifiers,
            "st": auth_request.state,
        }
        for claim, value in expected.items():
            if claims.get(claim) != value:
                logger.warning(f"Consent token claim '{claim}' does not match the request")
                raise InvalidRequest('consent_token')
