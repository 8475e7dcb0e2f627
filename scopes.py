# scopes.py
import re
from typing import Dict, Iterable, List, Sequence, Tuple

from errors import InvalidScope
from models import Scope
from repositories import ScopeRepositoryInterface

SCOPE_IDENTIFIER_RE = re.compile(r"^[a-z]+:[a-z]+$")

SCOPE_CATALOG_ENTRIES: Tuple[Tuple[str, str], ...] = (
    ("preference:read", "Read preferences"),
    ("preference:write", "Write preferences"),
    ("email:read", "Read email address"),
    ("challenge:read", "Read incoming challenges"),
    ("challenge:write", "Create, accept, decline challenges"),
    ("study:read", "Read private studies and broadcasts"),
    ("study:write", "Create, update, delete studies and broadcasts"),
    ("tournament:write", "Create tournaments"),
    ("team:write", "Join, leave, and manage teams"),
    ("msg:write", "Send private messages to other players"),
    ("bot:play", "Play games with the bot API"),
    ("board:play", "Play games with the board API"),
    ("puzzle:read", "Read puzzle activity"),
    # deprecated
    ("game:read", "Download all games"),
)


def build_scope_catalog(entries: Sequence[Tuple[str, str]]) -> Dict[str, str]:
    catalog: Dict[str, str] = {}
    for identifier, label in entries:
        if not SCOPE_IDENTIFIER_RE.match(identifier):
            raise ValueError(f"Malformed scope identifier: {identifier!r}")
        if not label:
            raise ValueError(f"Scope '{identifier}' has no label")
        if identifier in catalog:
            raise ValueError(f"Duplicate scope identifier: {identifier!r}")
        catalog[identifier] = label
    return catalog


SCOPE_CATALOG = build_scope_catalog(SCOPE_CATALOG_ENTRIES)


def parse_scope_parameter(value) -> List[str]:
    """Split a space-delimited ``scope`` parameter, dropping repeats."""
    if not value:
        return []
    identifiers = []
    for identifier in value.split(" "):
        if identifier and identifier not in identifiers:
            identifiers.append(identifier)
    return identifiers


def scope_label(scope: Scope) -> str:
    return scope.description or scope.identifier


class CatalogScopeRepository(ScopeRepositoryInterface):
    """Scopes are a deploy-time catalog, shared by every storage backend."""

    def __init__(self, catalog: Dict[str, str] = None):
        self.catalog = SCOPE_CATALOG if catalog is None else catalog

    async def get_scopes(self, identifiers: Iterable[str]) -> List[Scope]:
        scopes = []
        seen = set()
        for identifier in identifiers:
            if identifier in seen:
                continue
            if identifier not in self.catalog:
                raise InvalidScope(identifier)
            seen.add(identifier)
            scopes.append(Scope(identifier=identifier, description=self.catalog[identifier]))
        return scopes
