# AuthorizationCodeGrant.py
import base64
import hashlib
import logging
import re
import secrets

from AbstractGrant import AbstractGrant, MAX_IDENTIFIER_GENERATION_ATTEMPTS, generate_unique_identifier
from errors import (
    AccessDenied, InvalidClient, InvalidGrant, InvalidRedirectUri, InvalidRequest, ServerError,
    UniqueIdentifierViolation, UnsupportedResponseType, append_query,
)
from models import GRANT_TYPE_AUTH_CODE, AuthorizationCode, AuthorizationRequest, TokenResponse
from scopes import parse_scope_parameter

logger = logging.getLogger(__name__)

# RFC 7636 section 4.1 / 4.2
CODE_CHALLENGE_RE = re.compile(r'^[A-Za-z0-9\-._~]{43,128}$')
CODE_CHALLENGE_METHODS = ('S256', 'plain')

INVALID_CODE_DESCRIPTION = "The authorization code is invalid, expired or revoked."


def create_code_challenge(code_verifier, code_challenge_method):
    if code_challenge_method == 'S256':
        return base64.urlsafe_b64encode(
            hashlib.sha256(code_verifier.encode()).digest()
        ).decode().rstrip("=")
    return code_verifier


class AuthorizationCodeGrant(AbstractGrant):
    grant_type = GRANT_TYPE_AUTH_CODE

    def __init__(self, auth_code_repository, auth_code_ttl, require_code_challenge_for_public_clients=False):
        super().__init__()
        self.auth_code_repository = auth_code_repository
        self.auth_code_ttl = auth_code_ttl
        self.require_code_challenge_for_public_clients = require_code_challenge_for_public_clients

    def can_respond_to_authorization_request(self, params) -> bool:
        return 'client_id' in params or 'response_type' in params

    async def validate_authorization_request(self, params) -> AuthorizationRequest:
        client_id = params.get('client_id')
        if not client_id:
            raise InvalidRequest('client_id')

        client = await self.client_repository.find_client(client_id, self.grant_type, validate_secret=False)
        if client is None:
            logger.warning(f"Authorization request for unknown client '{client_id}'")
            raise InvalidClient()

        redirect_uri = params.get('redirect_uri')
        if redirect_uri:
            if redirect_uri not in client.redirect_uris:
                logger.warning(f"Unregistered redirect_uri '{redirect_uri}' for client '{client_id}'")
                raise InvalidRedirectUri()
        elif len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]
        else:
            raise InvalidRedirectUri()

        if params.get('response_type') != 'code':
            raise UnsupportedResponseType()

        scopes = await self.scope_repository.get_scopes(parse_scope_parameter(params.get('scope')))
        scopes = await self.scope_repository.finalize_scopes(scopes, self.grant_type, client)

        code_challenge = params.get('code_challenge')
        code_challenge_method = None
        if code_challenge:
            code_challenge_method = params.get('code_challenge_method') or 'plain'
            if code_challenge_method not in CODE_CHALLENGE_METHODS:
                raise InvalidRequest(hint='Code challenge method must be one of "S256" or "plain".')
            if not CODE_CHALLENGE_RE.match(code_challenge):
                raise InvalidRequest(hint='Code challenge must follow the specifications of RFC-7636.')
        elif self.require_code_challenge_for_public_clients and not client.is_confidential:
            raise InvalidRequest('code_challenge')

        return AuthorizationRequest(
            grant_type=self.grant_type,
            client=client,
            redirect_uri=redirect_uri,
            scopes=scopes,
            state=params.get('state'),
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )

    async def complete_authorization_request(self, auth_request: AuthorizationRequest) -> str:
        """Return the URL the user agent is redirected to with a freshly minted code."""
        if auth_request.user is None:
            raise RuntimeError("A User must be attached to the AuthorizationRequest before it is completed")

        if not auth_request.approved:
            logger.info(f"User '{auth_request.user.identifier}' denied client '{auth_request.client.identifier}'")
            raise AccessDenied(redirect_uri=auth_request.redirect_uri, state=auth_request.state)

        auth_code = await self.issue_auth_code(auth_request)
        params = {'code': auth_code.identifier}
        if auth_request.state is not None:
            params['state'] = auth_request.state
        return append_query(auth_request.redirect_uri, params)

    async def issue_auth_code(self, auth_request: AuthorizationRequest) -> AuthorizationCode:
        expires_at = self.auth_code_ttl.add_to(self.clock())
        for _ in range(MAX_IDENTIFIER_GENERATION_ATTEMPTS):
            auth_code = AuthorizationCode(
                identifier=generate_unique_identifier(),
                client_id=auth_request.client.identifier,
                user_id=auth_request.user.identifier,
                redirect_uri=auth_request.redirect_uri,
                scopes=auth_request.scope_identifiers,
                expires_at=expires_at,
                code_challenge=auth_request.code_challenge,
                code_challenge_method=auth_request.code_challenge_method,
            )
            try:
                await self.auth_code_repository.persist_new_auth_code(auth_code)
                logger.info(f"Issued authorization code for client '{auth_code.client_id}' and user '{auth_code.user_id}'")
                return auth_code
            except UniqueIdentifierViolation:
                logger.warning("Authorization code identifier collision, regenerating")
        raise ServerError("Could not generate a unique authorization code.")

    async def respond_to_access_token_request(self, params, authorization=None) -> TokenResponse:
        client = await self.validate_client(params, authorization)

        code = params.get('code')
        if not code:
            raise InvalidRequest('code')

        # Read and revoke in one step: a concurrent redemption of the same code gets None.
        auth_code = await self.auth_code_repository.consume_auth_code(code)
        if auth_code is None:
            logger.warning(f"Authorization code missing or already redeemed (client '{client.identifier}')")
            raise InvalidGrant(INVALID_CODE_DESCRIPTION)

        if auth_code.expires_at <= self.clock():
            logger.warning(f"Expired authorization code presented by client '{client.identifier}'")
            raise InvalidGrant(INVALID_CODE_DESCRIPTION)

        if auth_code.client_id != client.identifier:
            logger.warning(f"Authorization code issued to '{auth_code.client_id}' presented by '{client.identifier}'")
            raise InvalidGrant(INVALID_CODE_DESCRIPTION)

        redirect_uri = params.get('redirect_uri') or None
        if redirect_uri is not None and redirect_uri != auth_code.redirect_uri:
            logger.warning(f"Authorization code redirect_uri mismatch for client '{client.identifier}'")
            raise InvalidGrant(INVALID_CODE_DESCRIPTION)

        if auth_code.code_challenge:
            self.verify_code_verifier(params.get('code_verifier'), auth_code)

        scopes = await self.scope_repository.get_scopes(auth_code.scopes)
        access_token, refresh_token = await self.issue_token_pair(client, auth_code.user_id, scopes)
        logger.info(f"Issued access token for user '{auth_code.user_id}' to client '{client.identifier}'")

        return TokenResponse(
            access_token=access_token.identifier,
            expires_in=max(0, int((access_token.expires_at - self.clock()).total_seconds())),
            refresh_token=refresh_token.identifier if refresh_token else None,
        )

    def verify_code_verifier(self, code_verifier, auth_code: AuthorizationCode):
        if not code_verifier or not CODE_CHALLENGE_RE.match(code_verifier):
            raise InvalidGrant(INVALID_CODE_DESCRIPTION)
        expected = create_code_challenge(code_verifier, auth_code.code_challenge_method)
        if not secrets.compare_digest(expected, auth_code.code_challenge):
            logger.warning(f"Invalid code_verifier for client '{auth_code.client_id}'")
            raise InvalidGrant(INVALID_CODE_DESCRIPTION)
