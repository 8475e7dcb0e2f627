# Tests for refresh-token rotation.

import pytest

from errors import InvalidClient, InvalidGrant, InvalidRequest, InvalidScope
from models import User
from RefreshTokenGrant import INVALID_REFRESH_TOKEN_DESCRIPTION


def _refresh_params(refresh_token, **overrides):
    params = {"grant_type": "refresh_token", "client_id": "app1", "refresh_token": refresh_token}
    params.update(overrides)
    return params


class TestRefreshTokenGrant:
    @pytest.mark.asyncio
    async def test_rotation_issues_new_pair_and_revokes_old(self, server, obtain_tokens, repositories):
        original = await obtain_tokens()
        refreshed = await server.issue_token(_refresh_params(original.refresh_token))

        assert refreshed.access_token != original.access_token
        assert refreshed.refresh_token != original.refresh_token
        assert refreshed.token_type == "Bearer"
        assert await repositories.access_tokens.is_access_token_revoked(original.access_token)
        assert await repositories.refresh_tokens.is_refresh_token_revoked(original.refresh_token)
        assert not await repositories.access_tokens.is_access_token_revoked(refreshed.access_token)

        new_access_token = repositories.access_tokens.items[refreshed.access_token]
        assert new_access_token.user_id == "alice"
        assert new_access_token.scopes == ["preference:read", "email:read"]

    @pytest.mark.asyncio
    async def test_refresh_token_is_single_use(self, server, obtain_tokens):
        original = await obtain_tokens()
        await server.issue_token(_refresh_params(original.refresh_token))
        with pytest.raises(InvalidGrant):
            await server.issue_token(_refresh_params(original.refresh_token))

    @pytest.mark.asyncio
    async def test_new_refresh_token_keeps_working(self, server, obtain_tokens):
        original = await obtain_tokens()
        first = await server.issue_token(_refresh_params(original.refresh_token))
        second = await server.issue_token(_refresh_params(first.refresh_token))
        assert second.access_token

    @pytest.mark.asyncio
    async def test_narrower_scope_is_granted(self, server, obtain_tokens, repositories):
        original = await obtain_tokens()
        refreshed = await server.issue_token(_refresh_params(original.refresh_token, scope="email:read"))
        assert repositories.access_tokens.items[refreshed.access_token].scopes == ["email:read"]

    @pytest.mark.asyncio
    async def test_wider_scope_is_refused(self, server, obtain_tokens):
        original = await obtain_tokens()
        with pytest.raises(InvalidScope):
            await server.issue_token(_refresh_params(original.refresh_token, scope="email:read bot:play"))

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, server, obtain_tokens, clock):
        original = await obtain_tokens()
        clock.advance(days=365 * 21)
        with pytest.raises(InvalidGrant):
            await server.issue_token(_refresh_params(original.refresh_token))

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, server):
        with pytest.raises(InvalidRequest):
            await server.issue_token(_refresh_params(""))

    @pytest.mark.asyncio
    async def test_token_of_another_client(self, server, obtain_tokens):
        original = await obtain_tokens()
        with pytest.raises(InvalidGrant):
            await server.issue_token(_refresh_params(
                original.refresh_token, client_id="app2", client_secret="app2-secret"
            ))

    @pytest.mark.asyncio
    async def test_confidential_client_wrong_secret(self, server, obtain_tokens):
        original = await obtain_tokens()
        with pytest.raises(InvalidClient):
            await server.issue_token(_refresh_params(
                original.refresh_token, client_id="app2", client_secret="nope"
            ))

    @pytest.mark.asyncio
    async def test_failures_are_indistinguishable(self, server, obtain_tokens, clock):
        used = await obtain_tokens()
        await server.issue_token(_refresh_params(used.refresh_token))
        expired = await obtain_tokens()
        clock.advance(days=365 * 21)

        descriptions = set()
        for token in ("unknown-token", used.refresh_token, expired.refresh_token):
            with pytest.raises(InvalidGrant) as exc_info:
                await server.issue_token(_refresh_params(token))
            descriptions.add(exc_info.value.error_description)
        assert descriptions == {INVALID_REFRESH_TOKEN_DESCRIPTION}

    @pytest.mark.asyncio
    async def test_no_refresh_tokens_when_grant_disabled(self, server_factory, repositories):
        server = server_factory(with_refresh_tokens=False)
        auth_request = await server.validate_authorization_request({
            "response_type": "code", "client_id": "app1", "scope": "email:read",
        })
        auth_request.user = User(identifier="alice")
        auth_request.approved = True
        response = await server.complete_authorization_request(auth_request)
        code = response.headers["location"].split("code=")[1]
        token = await server.issue_token({"grant_type": "authorization_code", "client_id": "app1", "code": code})
        assert token.refresh_token is None
        assert repositories.refresh_tokens.items == {}
