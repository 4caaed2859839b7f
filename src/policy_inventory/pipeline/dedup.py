from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from ..normalize.schema import CanonicalEntity, EntityType


def _prefer_longer(current: tuple, candidate: tuple) -> tuple:
    # ties keep the first-seen sequence
    return candidate if len(candidate) > len(current) else current


def _later(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if not a:
        return b
    if not b:
        return a
    return max(a, b)


def merge_pair(first: CanonicalEntity, other: CanonicalEntity) -> CanonicalEntity:
    """
    Merge two entities sharing an id. Attributes are merged one by one so the
    result carries the union of non-empty values:
      - non-empty displayName/description wins over empty, first-seen on ties
      - the longer assignments/settings/scope tag sequence wins, first-seen on ties
      - a known entityType wins over UNKNOWN
      - provenance kinds are unioned; sourceKind and rawPayload stay first-seen
    """
    if first.id != other.id:
        raise ValueError(f"Cannot merge entities with different ids: {first.id} != {other.id}")
    entity_type = first.entity_type
    if entity_type == EntityType.UNKNOWN:
        entity_type = other.entity_type
    return replace(
        first,
        display_name=first.display_name or other.display_name,
        description=first.description or other.description,
        entity_type=entity_type,
        assignments=_prefer_longer(first.assignments, other.assignments),
        settings=_prefer_longer(first.settings, other.settings),
        scope_tags=_prefer_longer(first.scope_tags, other.scope_tags),
        modified=_later(first.modified, other.modified),
        source_kinds=frozenset(first.source_kinds | other.source_kinds | {first.source_kind, other.source_kind}),
    )


class Deduplicator:
    """
    Collapses entities seen through more than one path (e.g. the same GPO in
    computer and user RSOP scope) into one per id, in first-seen order.
    """

    def merge(self, entities: Iterable[CanonicalEntity]) -> List[CanonicalEntity]:
        merged: Dict[str, CanonicalEntity] = {}
        for entity in entities:
            existing = merged.get(entity.id)
            if existing is None:
                merged[entity.id] = entity
            else:
                merged[entity.id] = merge_pair(existing, entity)
        return list(merged.values())
