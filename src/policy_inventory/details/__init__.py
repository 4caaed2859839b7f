from __future__ import annotations

from typing import Callable, Dict, List

from ..normalize.schema import SourceKind
from .base import DetailFetcher, PassThroughFetcher

DetailFetcherFactory = Callable[[], DetailFetcher]


class DetailRegistry:
    """
    Registry mapping source kinds to DetailFetcher factories.
    Falls back to PassThroughFetcher when no fetcher is registered.
    One registry is built per run; there is no module-level registry.
    """

    def __init__(self) -> None:
        self._map: Dict[SourceKind, DetailFetcherFactory] = {}

    def register(self, source_kind: SourceKind, factory: DetailFetcherFactory) -> None:
        self._map[source_kind] = factory

    def is_registered(self, source_kind: SourceKind) -> bool:
        return source_kind in self._map

    def registered_source_kinds(self) -> List[SourceKind]:
        return sorted(self._map.keys(), key=lambda k: k.value)

    def get(self, source_kind: SourceKind) -> DetailFetcher:
        factory = self._map.get(source_kind)
        if factory is not None:
            return factory()
        return PassThroughFetcher()
