# models.py

from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from datetime import datetime

GRANT_TYPE_AUTH_CODE = "authorization_code"
GRANT_TYPE_REFRESH_TOKEN = "refresh_token"
GRANT_TYPE_CLIENT_CREDENTIALS = "client_credentials"


class Entity(BaseModel):
    model_config = ConfigDict(frozen=True)


class Client(Entity):
    identifier: str = Field(min_length=1)
    secret: Optional[str] = None  # passlib hash; None for public clients
    name: str
    redirect_uris: List[str]
    grant_types: List[str] = [GRANT_TYPE_AUTH_CODE, GRANT_TYPE_REFRESH_TOKEN]
    allowed_scopes: Optional[List[str]] = None

    @property
    def is_confidential(self) -> bool:
        return self.secret is not None


class User(Entity):
    identifier: str = Field(min_length=1)
    username: Optional[str] = None


class Scope(Entity):
    identifier: str
    description: str = ""


class AuthorizationCode(Entity):
    identifier: str
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: List[str] = []
    expires_at: datetime
    revoked: bool = False
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class AccessToken(Entity):
    identifier: str
    client_id: str
    user_id: Optional[str] = None
    scopes: List[str] = []
    expires_at: datetime
    revoked: bool = False


class RefreshToken(Entity):
    identifier: str
    access_token_id: str
    expires_at: datetime
    revoked: bool = False


class AuthorizationRequest(BaseModel):
    """A validated authorization request awaiting the resource owner's decision."""

    grant_type: str = GRANT_TYPE_AUTH_CODE
    client: Client
    redirect_uri: str
    scopes: List[Scope] = []
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    user: Optional[User] = None
    approved: bool = False

    @property
    def scope_identifiers(self) -> List[str]:
        return [scope.identifier for scope in self.scopes]


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
