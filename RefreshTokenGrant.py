# RefreshTokenGrant.py
import logging

from AbstractGrant import AbstractGrant
from errors import InvalidGrant, InvalidRequest, InvalidScope
from models import GRANT_TYPE_REFRESH_TOKEN, TokenResponse
from scopes import parse_scope_parameter

logger = logging.getLogger(__name__)

# One description for every failure so callers cannot tell unknown, expired and revoked tokens apart.
INVALID_REFRESH_TOKEN_DESCRIPTION = "The refresh token is invalid."


class RefreshTokenGrant(AbstractGrant):
    grant_type = GRANT_TYPE_REFRESH_TOKEN

    async def respond_to_access_token_request(self, params, authorization=None) -> TokenResponse:
        client = await self.validate_client(params, authorization)

        token_id = params.get('refresh_token')
        if not token_id:
            raise InvalidRequest('refresh_token')

        refresh_token = await self.refresh_token_repository.consume_refresh_token(token_id)
        if refresh_token is None:
            logger.warning(f"Refresh token missing or already used (client '{client.identifier}')")
            raise InvalidGrant(INVALID_REFRESH_TOKEN_DESCRIPTION)

        if refresh_token.expires_at <= self.clock():
            logger.warning(f"Expired refresh token presented by client '{client.identifier}'")
            raise InvalidGrant(INVALID_REFRESH_TOKEN_DESCRIPTION)

        old_access_token = await self.access_token_repository.get_access_token(refresh_token.access_token_id)
        if old_access_token is None or old_access_token.client_id != client.identifier:
            logger.warning(f"Refresh token not issued to client '{client.identifier}'")
            raise InvalidGrant(INVALID_REFRESH_TOKEN_DESCRIPTION)

        original_scopes = old_access_token.scopes
        requested = parse_scope_parameter(params.get('scope'))
        if requested:
            for identifier in requested:
                if identifier not in original_scopes:
                    raise InvalidScope(identifier)
            scope_ids = requested
        else:
            scope_ids = original_scopes
        scopes = await self.scope_repository.get_scopes(scope_ids)
        scopes = await self.scope_repository.finalize_scopes(scopes, self.grant_type, client, old_access_token.user_id)

        await self.access_token_repository.revoke_access_token(old_access_token.identifier)

        access_token = await self.issue_access_token(client, old_access_token.user_id, scopes)
        new_refresh_token = await self.issue_refresh_token(access_token)
        logger.info(f"Rotated refresh token for user '{old_access_token.user_id}' and client '{client.identifier}'")

        return TokenResponse(
            access_token=access_token.identifier,
            expires_in=max(0, int((access_token.expires_at - self.clock()).total_seconds())),
            refresh_token=new_refresh_token.identifier,
        )
