from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

OUT_SCHEMA_VERSION = "1"


class SourceKind(str, Enum):
    """Provenance tag: which endpoint or local scope a record came from."""

    GRAPH_DEVICE_CONFIGURATION = "graph.deviceConfiguration"
    GRAPH_CONFIGURATION_POLICY = "graph.configurationPolicy"
    GRAPH_COMPLIANCE_POLICY = "graph.compliancePolicy"
    GRAPH_GROUP_POLICY_CONFIGURATION = "graph.groupPolicyConfiguration"
    GRAPH_MOBILE_APP = "graph.mobileApp"
    GPO_REPORT = "gpo.report"
    RSOP_COMPUTER = "rsop.computer"
    RSOP_USER = "rsop.user"

    @property
    def is_graph(self) -> bool:
        return self.value.startswith("graph.")

    @property
    def is_group_policy(self) -> bool:
        return not self.is_graph


class EntityType(str, Enum):
    """Closed set of entity labels; UNKNOWN covers unmapped discriminators."""

    DEVICE_CONFIGURATION = "Device Configuration"
    CUSTOM_PROFILE = "Custom Profile"
    ENDPOINT_PROTECTION = "Endpoint Protection"
    UPDATE_RING = "Update Ring"
    SETTINGS_CATALOG = "Settings Catalog"
    COMPLIANCE_POLICY = "Compliance Policy"
    ADMINISTRATIVE_TEMPLATE = "Administrative Template"
    WIN32_APP = "Win32 App"
    MSI_APP = "MSI App"
    WINGET_APP = "WinGet App"
    STORE_APP = "Store App"
    OFFICE_SUITE_APP = "Microsoft 365 Apps"
    WEB_APP = "Web Link"
    IOS_APP = "iOS App"
    ANDROID_APP = "Android App"
    MACOS_APP = "macOS App"
    GROUP_POLICY_OBJECT = "Group Policy Object"
    UNKNOWN = "Unknown"


class TargetType(str, Enum):
    GROUP = "group"
    ALL_DEVICES = "allDevices"
    ALL_USERS = "allUsers"
    EXCLUSION_GROUP = "exclusionGroup"
    OU_LINK = "ouLink"


@dataclass(frozen=True)
class SourceRecord:
    """Raw item as returned by a source system, tagged with its provenance."""

    data: Mapping[str, Any]
    source_kind: SourceKind


@dataclass(frozen=True)
class AssignmentRef:
    target_type: TargetType
    target_id: Optional[str] = None
    resolved_name: str = ""
    intent: Optional[str] = None
    filter_id: Optional[str] = None
    filter_name: str = ""
    filter_mode: Optional[str] = None
    enforced: Optional[bool] = None
    enabled: Optional[bool] = None
    order: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetType": self.target_type.value,
            "targetId": self.target_id,
            "resolvedName": self.resolved_name,
            "intent": self.intent,
            "filterId": self.filter_id,
            "filterName": self.filter_name,
            "filterMode": self.filter_mode,
            "enforced": self.enforced,
            "enabled": self.enabled,
            "order": self.order,
        }


@dataclass(frozen=True)
class SettingEntry:
    name: str
    value: Any = None
    category: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value, "category": self.category}


@dataclass(frozen=True)
class CanonicalEntity:
    id: str
    display_name: str
    entity_type: EntityType
    source_kind: SourceKind
    assignments: Tuple[AssignmentRef, ...] = ()
    settings: Tuple[SettingEntry, ...] = ()
    raw_payload: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""
    modified: Optional[str] = None
    scope_tags: Tuple[str, ...] = ()
    source_kinds: frozenset = frozenset()

    def provenance(self) -> List[str]:
        kinds = set(self.source_kinds) | {self.source_kind}
        return sorted(k.value for k in kinds)

    def to_dict(self, *, include_raw: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "displayName": self.display_name,
            "entityType": self.entity_type.value,
            "sourceKind": self.source_kind.value,
            "sourceKinds": self.provenance(),
            "description": self.description,
            "modified": self.modified,
            "scopeTags": list(self.scope_tags),
            "assignments": [a.to_dict() for a in self.assignments],
            "settings": [s.to_dict() for s in self.settings],
        }
        if include_raw:
            out["rawPayload"] = dict(self.raw_payload)
        return out


@dataclass(frozen=True)
class FailureRecord:
    stage: str
    item_identifier: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"stage": self.stage, "itemIdentifier": self.item_identifier, "message": self.message}


@dataclass(frozen=True)
class ReportMetadata:
    collected_at: str
    tool: str
    tool_version: str = ""
    source_scope: str = ""
    filter_description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "collectedAt": self.collected_at,
            "tool": self.tool,
            "toolVersion": self.tool_version,
            "sourceScope": self.source_scope,
            "filterDescription": self.filter_description,
        }


@dataclass(frozen=True)
class ReportDocument:
    metadata: ReportMetadata
    entities: Tuple[CanonicalEntity, ...]
    errors: Tuple[FailureRecord, ...]

    def counts_by_entity_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for entity in self.entities:
            counts[entity.entity_type.value] = counts.get(entity.entity_type.value, 0) + 1
        return dict(sorted(counts.items()))

    def counts_by_stage(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for err in self.errors:
            counts[err.stage] = counts.get(err.stage, 0) + 1
        return dict(sorted(counts.items()))

    def summary(self) -> Dict[str, Any]:
        return {
            "schema_version": OUT_SCHEMA_VERSION,
            "total_entities": len(self.entities),
            "total_assignments": sum(len(e.assignments) for e in self.entities),
            "errors": len(self.errors),
            "counts_by_entity_type": self.counts_by_entity_type(),
            "errors_by_stage": self.counts_by_stage(),
        }

    def to_dict(self, *, include_raw: bool = True) -> Dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "summary": self.summary(),
            "entities": [e.to_dict(include_raw=include_raw) for e in self.entities],
            "errors": [err.to_dict() for err in self.errors],
        }


@dataclass(frozen=True)
class OutputPaths:
    root: Path
    items_dir: Path
    logs_dir: Path
    index_json: Path
    entities_jsonl: Path
    entities_csv: Path
    entities_parquet: Path
    debug_log: Path


def resolve_output_paths(outdir: Path) -> OutputPaths:
    root = outdir
    logs_dir = root / "logs"
    return OutputPaths(
        root=root,
        items_dir=root / "items",
        logs_dir=logs_dir,
        index_json=root / "index.json",
        entities_jsonl=root / "entities.jsonl",
        entities_csv=root / "entities.csv",
        entities_parquet=root / "entities.parquet",
        debug_log=logs_dir / "debug.log",
    )


# Fields to include in CSV export ("report fields only")
CSV_REPORT_FIELDS: List[str] = [
    "id",
    "displayName",
    "entityType",
    "sourceKind",
    "assignmentCount",
    "settingCount",
    "scopeTags",
]

# Canonical field order used for stable JSON output
CANONICAL_FIELD_ORDER: List[str] = [
    "id",
    "displayName",
    "entityType",
    "sourceKind",
    "sourceKinds",
    "description",
    "modified",
    "scopeTags",
    "assignments",
    "settings",
    "rawPayload",
]
