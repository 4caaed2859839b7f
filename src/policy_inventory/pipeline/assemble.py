from __future__ import annotations

from typing import Iterable, List, Tuple

from ..normalize.schema import CanonicalEntity, FailureRecord, ReportDocument, ReportMetadata
from ..util.errors import AssemblyError


def entity_sort_key(entity: CanonicalEntity) -> Tuple[str, str, str]:
    """
    (displayName, id) ascending, case-insensitive; empty names sort first.
    The raw id breaks ties between ids differing only by case.
    """
    return ((entity.display_name or "").casefold(), (entity.id or "").casefold(), entity.id or "")


class ReportAssembler:
    """
    Builds the immutable ReportDocument handed to renderers. Writes nothing.
    """

    def assemble(
        self,
        entities: Iterable[CanonicalEntity],
        errors: Iterable[FailureRecord],
        metadata: ReportMetadata,
    ) -> ReportDocument:
        ordered: List[CanonicalEntity] = sorted(entities, key=entity_sort_key)
        seen = set()
        for entity in ordered:
            if not entity.id:
                raise AssemblyError("Entity without id reached assembly")
            if entity.id in seen:
                raise AssemblyError(f"Duplicate entity id reached assembly: {entity.id}")
            seen.add(entity.id)
        return ReportDocument(metadata=metadata, entities=tuple(ordered), errors=tuple(errors))
