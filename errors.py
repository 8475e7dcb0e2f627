# errors.py
import urllib.parse
from typing import Optional

from fastapi.responses import JSONResponse, RedirectResponse


class ProtocolError(Exception):
    """Client-facing OAuth2 error (RFC 6749 section 5.2 / 4.1.2.1)."""

    error = "invalid_request"
    status_code = 400
    default_description = "The request is missing a required parameter or is otherwise malformed."

    def __init__(self, error_description: Optional[str] = None,
                 redirect_uri: Optional[str] = None,
                 state: Optional[str] = None):
        self.error_description = error_description or self.default_description
        self.redirect_uri = redirect_uri
        self.state = state
        super().__init__(self.error_description)

    def to_dict(self):
        return {"error": self.error, "error_description": self.error_description}

    def to_json_response(self):
        headers = {}
        if self.status_code == 401:
            headers["WWW-Authenticate"] = 'Basic realm="OAuth"'
        return JSONResponse(self.to_dict(), status_code=self.status_code, headers=headers)

    def get_redirect_url(self):
        params = self.to_dict()
        if self.state is not None:
            params["state"] = self.state
        return append_query(self.redirect_uri, params)

    def generate_http_response(self):
        if self.redirect_uri:
            return RedirectResponse(url=self.get_redirect_url(), status_code=302)
        return self.to_json_response()


class InvalidRequest(ProtocolError):
    def __init__(self, parameter: Optional[str] = None, hint: Optional[str] = None, **kwargs):
        description = None
        if parameter:
            description = f'Check the "{parameter}" parameter.'
        if hint:
            description = hint
        super().__init__(description, **kwargs)


class InvalidClient(ProtocolError):
    error = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed."


class InvalidRedirectUri(ProtocolError):
    # Never redirected: the URI itself is untrusted.
    error = "invalid_request"
    default_description = "The redirect URI is missing or not registered for this client."


class InvalidScope(ProtocolError):
    error = "invalid_scope"
    default_description = "The requested scope is invalid, unknown, or malformed."

    def __init__(self, scope: Optional[str] = None, **kwargs):
        description = f'The scope "{scope}" is not recognised.' if scope else None
        super().__init__(description, **kwargs)


class UnsupportedResponseType(ProtocolError):
    error = "unsupported_response_type"
    default_description = "The authorization server does not support this response type."


class UnsupportedGrantType(ProtocolError):
    error = "unsupported_grant_type"
    default_description = "The authorization grant type is not supported by the authorization server."


class InvalidGrant(ProtocolError):
    error = "invalid_grant"
    default_description = "The provided authorization grant is invalid, expired or revoked."


class AccessDenied(ProtocolError):
    error = "access_denied"
    status_code = 401
    default_description = "The resource owner or authorization server denied the request."


class ServerError(ProtocolError):
    error = "server_error"
    status_code = 500
    default_description = "The authorization server encountered an unexpected condition."


class AuthenticationFailure(Exception):
    """The session cookie is absent or the platform did not accept it."""


class DependencyFailure(Exception):
    """A repository or the remote authentication check failed or timed out."""


class UniqueIdentifierViolation(Exception):
    """A freshly generated identifier already exists in storage."""


def append_query(uri: str, params: dict) -> str:
    parts = urllib.parse.urlsplit(uri)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))
