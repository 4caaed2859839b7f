from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from ..sources.graph import GraphClient
from ..util.errors import ResolutionError
from .cache import IdKind, IdLookup

# Graph collections holding the display name for each resolvable kind.
GRAPH_LOOKUP_COLLECTIONS: Dict[IdKind, str] = {
    IdKind.GROUP: "groups",
    IdKind.ASSIGNMENT_FILTER: "deviceManagement/assignmentFilters",
    IdKind.SCOPE_TAG: "deviceManagement/roleScopeTags",
}


class GraphIdLookup:
    def __init__(self, client: GraphClient) -> None:
        self._client = client

    def lookup(self, kind: IdKind, raw_id: str) -> Optional[str]:
        collection = GRAPH_LOOKUP_COLLECTIONS.get(kind)
        if collection is None:
            raise ResolutionError(f"Graph cannot resolve {kind.value} identifiers")
        item = self._client.get_item(collection, raw_id, select="displayName")
        return item.get("displayName")


class MappingIdLookup:
    """
    Lookup backed by in-memory maps, e.g. a GPO GUID -> name index built from
    local report files. Keys are compared case-insensitively.
    """

    def __init__(self, mappings: Optional[Mapping[IdKind, Mapping[str, str]]] = None) -> None:
        self._maps: Dict[IdKind, Dict[str, str]] = {}
        for kind, mapping in (mappings or {}).items():
            self.update(kind, mapping.items())

    def update(self, kind: IdKind, pairs: Iterable[tuple[str, str]]) -> None:
        target = self._maps.setdefault(kind, {})
        for raw_id, name in pairs:
            if raw_id and name:
                target[str(raw_id).strip().upper()] = str(name)

    def lookup(self, kind: IdKind, raw_id: str) -> Optional[str]:
        mapping = self._maps.get(kind)
        if mapping is None:
            raise ResolutionError(f"No index loaded for {kind.value} identifiers")
        name = mapping.get(raw_id.strip().upper())
        if name is None:
            raise ResolutionError(f"{kind.value} {raw_id} not found")
        return name


class RoutingIdLookup:
    """Dispatches each IdKind to its own lookup client."""

    def __init__(self, routes: Mapping[IdKind, IdLookup], *, default: Optional[IdLookup] = None) -> None:
        self._routes = dict(routes)
        self._default = default

    def lookup(self, kind: IdKind, raw_id: str) -> Optional[str]:
        target = self._routes.get(kind, self._default)
        if target is None:
            raise ResolutionError(f"No lookup configured for {kind.value} identifiers")
        return target.lookup(kind, raw_id)
