from __future__ import annotations

from typing import Any, Dict, List
from urllib.parse import quote

from ..normalize.schema import SourceKind, SourceRecord
from ..sources.graph import GRAPH_COLLECTIONS, GraphClient
from . import DetailRegistry
from .base import ChainedFetcher, with_fields


def _item_path(collection: str, record: SourceRecord, suffix: str) -> str:
    item_id = str(record.data.get("id") or "")
    if not item_id:
        raise ValueError("Record has no id; cannot fetch details")
    return f"{collection}/{quote(item_id, safe='')}/{suffix}"


class AssignmentsFetcher:
    """GET {collection}/{id}/assignments -> record["assignments"]."""

    name = "assignments"

    def __init__(self, client: GraphClient, collection: str) -> None:
        self._client = client
        self._collection = collection

    def fetch(self, record: SourceRecord) -> SourceRecord:
        if isinstance(record.data.get("assignments"), list):
            return record
        rows = list(self._client.get_all(_item_path(self._collection, record, "assignments")))
        return with_fields(record, assignments=rows)


class CatalogSettingsFetcher:
    """GET configurationPolicies/{id}/settings -> record["settings"]."""

    name = "settings"

    def __init__(self, client: GraphClient, collection: str) -> None:
        self._client = client
        self._collection = collection

    def fetch(self, record: SourceRecord) -> SourceRecord:
        rows = list(self._client.get_all(_item_path(self._collection, record, "settings")))
        return with_fields(record, settings=rows)


class DefinitionValuesFetcher:
    """GET groupPolicyConfigurations/{id}/definitionValues?$expand=definition."""

    name = "definitionValues"

    def __init__(self, client: GraphClient, collection: str) -> None:
        self._client = client
        self._collection = collection

    def fetch(self, record: SourceRecord) -> SourceRecord:
        rows: List[Dict[str, Any]] = list(
            self._client.get_all(
                _item_path(self._collection, record, "definitionValues"),
                params={"$expand": "definition,presentationValues"},
            )
        )
        return with_fields(record, definitionValues=rows)


def build_graph_detail_registry(client: GraphClient, *, include_settings: bool = True) -> DetailRegistry:
    """
    Register assignment fetchers for every Graph collection and settings
    fetchers for the collections whose list payload omits settings.
    """
    registry = DetailRegistry()

    def _factory(kind: SourceKind) -> Any:
        collection = GRAPH_COLLECTIONS[kind]

        def make() -> Any:
            fetchers: List[Any] = [AssignmentsFetcher(client, collection)]
            if include_settings and kind == SourceKind.GRAPH_CONFIGURATION_POLICY:
                fetchers.append(CatalogSettingsFetcher(client, collection))
            if include_settings and kind == SourceKind.GRAPH_GROUP_POLICY_CONFIGURATION:
                fetchers.append(DefinitionValuesFetcher(client, collection))
            return fetchers[0] if len(fetchers) == 1 else ChainedFetcher(*fetchers)

        return make

    for kind in GRAPH_COLLECTIONS:
        registry.register(kind, _factory(kind))
    return registry
