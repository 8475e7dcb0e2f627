# repositories.py
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from passlib.context import CryptContext

from models import AccessToken, AuthorizationCode, Client, RefreshToken, Scope

logger = logging.getLogger(__name__)

# Client secret hashing
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_client_secret(secret: str) -> str:
    return pwd_context.hash(secret)


def verify_client_secret(secret: Optional[str], hashed_secret: str) -> bool:
    if not secret:
        return False
    return pwd_context.verify(secret, hashed_secret)


class ClientRepositoryInterface(ABC):
    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[Client]:
        """Load a registered client, or None."""

    @abstractmethod
    async def add_client(self, client: Client):
        """Register a client out-of-band (seeding, administration)."""

    async def find_client(self, client_id: str, grant_type: Optional[str] = None,
                          client_secret: Optional[str] = None, validate_secret: bool = True):
        """
        Return the client if it exists, may use ``grant_type`` and, when
        confidential, presented ``client_secret``. Otherwise return None.
        """
        client = await self.get_client(client_id)
        if client is None:
            return None
        if grant_type is not None and grant_type not in client.grant_types:
            logger.warning(f"Client '{client_id}' is not permitted to use grant '{grant_type}'")
            return None
        if validate_secret and client.is_confidential:
            if not verify_client_secret(client_secret, client.secret):
                logger.warning(f"Client secret verification failed for '{client_id}'")
                return None
        return client


class ScopeRepositoryInterface(ABC):
    @abstractmethod
    async def get_scopes(self, identifiers: Iterable[str]) -> List[Scope]:
        """Resolve identifiers to scopes; raise InvalidScope on the first unknown one."""

    async def finalize_scopes(self, scopes: List[Scope], grant_type: str, client: Client,
                              user_id: Optional[str] = None) -> List[Scope]:
        # Narrowing only: a scope the client didn't request is never added here.
        if client.allowed_scopes is None:
            return list(scopes)
        return [scope for scope in scopes if scope.identifier in client.allowed_scopes]


class AuthCodeRepositoryInterface(ABC):
    @abstractmethod
    async def persist_new_auth_code(self, auth_code: AuthorizationCode):
        """Store a new code; raise UniqueIdentifierViolation if the identifier exists."""

    @abstractmethod
    async def consume_auth_code(self, code_id: str) -> Optional[AuthorizationCode]:
        """Atomically mark the code revoked and return it, or None if missing or already revoked."""

    @abstractmethod
    async def revoke_auth_code(self, code_id: str):
        pass

    @abstractmethod
    async def is_auth_code_revoked(self, code_id: str) -> bool:
        pass


class AccessTokenRepositoryInterface(ABC):
    @abstractmethod
    async def persist_new_access_token(self, access_token: AccessToken):
        """Store a new token; raise UniqueIdentifierViolation if the identifier exists."""

    @abstractmethod
    async def get_access_token(self, token_id: str) -> Optional[AccessToken]:
        pass

    @abstractmethod
    async def revoke_access_token(self, token_id: str):
        pass

    @abstractmethod
    async def is_access_token_revoked(self, token_id: str) -> bool:
        pass


class RefreshTokenRepositoryInterface(ABC):
    @abstractmethod
    async def persist_new_refresh_token(self, refresh_token: RefreshToken):
        """Store a new token; raise UniqueIdentifierViolation if the identifier exists."""

    @abstractmethod
    async def consume_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        """Atomically mark the token revoked and return it, or None if missing or already revoked."""

    @abstractmethod
    async def revoke_refresh_token(self, token_id: str):
        pass

    @abstractmethod
    async def is_refresh_token_revoked(self, token_id: str) -> bool:
        pass
