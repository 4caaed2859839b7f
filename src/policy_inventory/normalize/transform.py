from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..logging import get_logger
from ..pipeline.events import OUTCOME_OK, Observer, PipelineEvent
from ..pipeline.failures import STAGE_NORMALIZATION, FailureCollector
from ..resolve.cache import UNRESOLVED, IdKind, ReferenceResolverCache
from ..util.concurrency import parallel_map_ordered
from ..util.errors import NormalizationError
from ..util.serialization import REDACTED_VALUE, is_secret_field, sanitize_for_json
from .fields import (
    APP_SETTING_FIELDS,
    ASSIGNMENT_TARGET_TYPES,
    GPO_FIELDS,
    GPO_LINK_FIELDS,
    GPO_SETTING_RULES,
    GRAPH_ASSIGNMENT_FIELDS,
    GRAPH_FIELDS,
    GRAPH_METADATA_FIELDS,
    ODATA_TYPE_KEY,
    SettingRule,
    as_bool,
    as_int,
    as_list,
    classify,
    first_present,
    first_text,
    is_empty,
    strip_odata_prefix,
)
from .gpo_xml import canonical_guid
from .schema import (
    CANONICAL_FIELD_ORDER,
    AssignmentRef,
    CanonicalEntity,
    SettingEntry,
    SourceKind,
    SourceRecord,
    TargetType,
)

LOG = get_logger(__name__)

# Settings-catalog instance value shapes, most specific first.
CATALOG_VALUE_FIELDS = (
    ("choiceSettingValue", "value"),
    ("simpleSettingValue", "value"),
    "simpleSettingCollectionValue",
    "choiceSettingCollectionValue",
    "groupSettingCollectionValue",
)

GPO_SECTIONS = ("Computer", "User")


def describe_record(record: SourceRecord) -> str:
    """
    Short identifier for failure records: "<sourceKind>:<id or name>".
    """
    data = record.data
    fields = GRAPH_FIELDS if record.source_kind.is_graph else GPO_FIELDS
    label = first_text(data, fields["id"]) or first_text(data, fields["displayName"]) or "?"
    return f"{record.source_kind.value}:{label}"


def _scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def _setting_value(value: Any) -> Any:
    """
    Reduce XML/JSON setting payloads to a scalar or a list of scalars.
    """
    if isinstance(value, list):
        return [_setting_value(v) for v in value]
    if isinstance(value, Mapping):
        text = first_text(value, ("#text", "Name", "Value", "String", "value"))
        if text:
            return text
        return {k: _setting_value(v) for k, v in sorted(value.items()) if not str(k).startswith("@")}
    return value


class SchemaNormalizer:
    """
    Maps Graph and Group Policy source dialects onto CanonicalEntity.

    Every canonical attribute is read through an ordered candidate table (see
    normalize.fields). Embedded reference IDs are resolved through the shared
    ReferenceResolverCache while assignments are built.
    """

    def __init__(
        self,
        resolver: ReferenceResolverCache,
        *,
        failures: Optional[FailureCollector] = None,
        observer: Optional[Observer] = None,
    ) -> None:
        self._resolver = resolver
        self._failures = failures
        self._observer = observer

    # -- public API --------------------------------------------------------

    def normalize(self, record: SourceRecord) -> CanonicalEntity:
        try:
            if record.source_kind.is_graph:
                return self._normalize_graph(record)
            return self._normalize_gpo(record)
        except NormalizationError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise NormalizationError(f"Malformed record: {e}", record_hint=describe_record(record)) from e

    def normalize_all(
        self,
        records: Iterable[SourceRecord],
        *,
        max_workers: int = 1,
        abort: Optional[threading.Event] = None,
    ) -> List[CanonicalEntity]:
        """
        Normalize a batch. Rejected records are reported to the failure
        collector under "normalization" and dropped; the batch continues.
        """

        def _one(record: SourceRecord) -> Optional[CanonicalEntity]:
            try:
                entity = self.normalize(record)
            except NormalizationError as e:
                hint = e.record_hint or describe_record(record)
                if self._failures is None:
                    raise
                self._failures.record(STAGE_NORMALIZATION, hint, str(e))
                return None
            if self._observer is not None:
                self._observer.on_event(PipelineEvent(stage=STAGE_NORMALIZATION, item=entity.id, outcome=OUTCOME_OK))
            return entity

        results = parallel_map_ordered(_one, records, max_workers=max_workers, abort=abort)
        return [e for e in results if e is not None]

    def display_name_of(self, record: SourceRecord) -> str:
        """
        Name used for selection. A Group Policy record without a Name is
        looked up by GUID, the same way normalization names it.
        """
        if record.source_kind.is_graph:
            return first_text(record.data, GRAPH_FIELDS["displayName"])
        name = first_text(record.data, GPO_FIELDS["displayName"])
        if name:
            return name
        guid = canonical_guid(first_text(record.data, GPO_FIELDS["id"]))
        if not guid:
            return ""
        resolved = self._resolver.resolve(IdKind.GPO, guid)
        return "" if resolved == UNRESOLVED else resolved

    # -- Graph dialect -----------------------------------------------------

    def _normalize_graph(self, record: SourceRecord) -> CanonicalEntity:
        data = record.data
        entity_id = first_text(data, GRAPH_FIELDS["id"])
        if not entity_id:
            raise NormalizationError("Record has no identifier", record_hint=describe_record(record))

        entity_type = classify(record.source_kind, data.get(ODATA_TYPE_KEY))
        assignments = [
            ref
            for ref in (self._graph_assignment(a) for a in as_list(first_present(data, GRAPH_FIELDS["assignments"])))
            if ref is not None
        ]
        scope_tags = [
            self._resolver.resolve(IdKind.SCOPE_TAG, str(tag))
            for tag in as_list(first_present(data, GRAPH_FIELDS["scopeTags"]))
            if not is_empty(tag)
        ]

        return CanonicalEntity(
            id=entity_id,
            display_name=first_text(data, GRAPH_FIELDS["displayName"]),
            entity_type=entity_type,
            source_kind=record.source_kind,
            assignments=tuple(assignments),
            settings=tuple(self._graph_settings(record)),
            raw_payload=sanitize_for_json(dict(data)),
            description=first_text(data, GRAPH_FIELDS["description"]),
            modified=first_text(data, GRAPH_FIELDS["modified"]) or None,
            scope_tags=tuple(scope_tags),
            source_kinds=frozenset({record.source_kind}),
        )

    def _graph_assignment(self, row: Any) -> Optional[AssignmentRef]:
        if not isinstance(row, Mapping):
            return None
        odata_type = strip_odata_prefix(first_text(row, GRAPH_ASSIGNMENT_FIELDS["targetType"]))
        target_type = ASSIGNMENT_TARGET_TYPES.get(odata_type)
        if target_type is None:
            LOG.debug("Skipping unsupported assignment target", extra={"step": "normalize", "target_type": odata_type})
            return None

        target_id: Optional[str] = None
        resolved = ""
        if target_type in (TargetType.GROUP, TargetType.EXCLUSION_GROUP):
            target_id = first_text(row, GRAPH_ASSIGNMENT_FIELDS["groupId"]) or None
            resolved = self._resolver.resolve(IdKind.GROUP, target_id)
        elif target_type == TargetType.ALL_DEVICES:
            resolved = "All devices"
        elif target_type == TargetType.ALL_USERS:
            resolved = "All users"

        filter_id = first_text(row, GRAPH_ASSIGNMENT_FIELDS["filterId"]) or None
        filter_mode = first_text(row, GRAPH_ASSIGNMENT_FIELDS["filterMode"]) or None
        if filter_mode == "none":
            filter_mode = None
        # Graph reports the all-zero GUID when no filter is attached
        if filter_id and filter_id.strip("0-") == "":
            filter_id = None

        return AssignmentRef(
            target_type=target_type,
            target_id=target_id,
            resolved_name=resolved,
            intent=first_text(row, GRAPH_ASSIGNMENT_FIELDS["intent"]) or None,
            filter_id=filter_id,
            filter_name=self._resolver.resolve(IdKind.ASSIGNMENT_FILTER, filter_id),
            filter_mode=filter_mode if filter_id else None,
        )

    def _graph_settings(self, record: SourceRecord) -> List[SettingEntry]:
        data = record.data
        if record.source_kind == SourceKind.GRAPH_MOBILE_APP:
            return self._app_settings(data)

        settings: List[SettingEntry] = []
        for oma in as_list(data.get("omaSettings")):
            if not isinstance(oma, Mapping):
                continue
            name = first_text(oma, ("omaUri", "displayName"))
            if name:
                settings.append(
                    SettingEntry(name=name, value=_setting_value(first_present(oma, ("value", "fileName"))), category="OMA-URI")
                )
        for item in as_list(data.get("settings")):
            entry = self._catalog_setting(item)
            if entry is not None:
                settings.append(entry)
        for item in as_list(data.get("definitionValues")):
            entry = self._admx_setting(item)
            if entry is not None:
                settings.append(entry)

        if record.source_kind in (SourceKind.GRAPH_DEVICE_CONFIGURATION, SourceKind.GRAPH_COMPLIANCE_POLICY):
            for key, value in data.items():
                if key in GRAPH_METADATA_FIELDS or key.startswith("@") or "@odata" in key:
                    continue
                if _scalar(value) or (isinstance(value, list) and all(_scalar(v) for v in value)):
                    if is_empty(value):
                        continue
                    if is_secret_field(key, value):
                        value = REDACTED_VALUE
                    settings.append(SettingEntry(name=key, value=value))
        return settings

    def _catalog_setting(self, item: Any) -> Optional[SettingEntry]:
        instance = item.get("settingInstance") if isinstance(item, Mapping) else None
        if not isinstance(instance, Mapping):
            return None
        name = first_text(instance, ("settingDefinitionId",))
        if not name:
            return None
        raw = first_present(instance, CATALOG_VALUE_FIELDS)
        if isinstance(raw, list):
            value: Any = [_setting_value(v.get("value", v) if isinstance(v, Mapping) else v) for v in raw]
        else:
            value = _setting_value(raw)
        return SettingEntry(name=name, value=value, category="Settings Catalog")

    def _admx_setting(self, item: Any) -> Optional[SettingEntry]:
        if not isinstance(item, Mapping):
            return None
        name = first_text(item, (("definition", "displayName"), "definitionId", "id"))
        if not name:
            return None
        enabled = as_bool(item.get("enabled"))
        presentations = [
            _setting_value(p.get("value")) for p in as_list(item.get("presentationValues")) if isinstance(p, Mapping)
        ]
        state = "Enabled" if enabled else "Disabled" if enabled is False else "Not configured"
        value: Any = state if not presentations else {"state": state, "values": presentations}
        return SettingEntry(
            name=name,
            value=value,
            category=first_text(item, (("definition", "categoryPath"), ("definition", "classType"))),
        )

    def _app_settings(self, data: Mapping[str, Any]) -> List[SettingEntry]:
        settings: List[SettingEntry] = []
        for label, candidates in APP_SETTING_FIELDS:
            value = first_present(data, candidates)
            if value is None:
                continue
            settings.append(SettingEntry(name=label, value=_setting_value(value), category="App"))
        return settings

    # -- Group Policy dialect ---------------------------------------------

    def _normalize_gpo(self, record: SourceRecord) -> CanonicalEntity:
        data = record.data
        entity_id = canonical_guid(first_text(data, GPO_FIELDS["id"]))
        if not entity_id:
            raise NormalizationError("GPO has no GUID", record_hint=describe_record(record))

        display_name = first_text(data, GPO_FIELDS["displayName"])
        if not display_name:
            resolved = self._resolver.resolve(IdKind.GPO, entity_id)
            display_name = "" if resolved == UNRESOLVED else resolved

        return CanonicalEntity(
            id=entity_id,
            display_name=display_name,
            entity_type=classify(record.source_kind, data.get("#node") or "GPO"),
            source_kind=record.source_kind,
            assignments=tuple(self._gpo_links(data)),
            settings=tuple(self._gpo_settings(record)),
            raw_payload=sanitize_for_json(dict(data)),
            description=first_text(data, GPO_FIELDS["description"]),
            modified=first_text(data, GPO_FIELDS["modified"]) or None,
            source_kinds=frozenset({record.source_kind}),
        )

    def _gpo_links(self, data: Mapping[str, Any]) -> List[AssignmentRef]:
        links: List[AssignmentRef] = []
        for link in as_list(first_present(data, GPO_FIELDS["links"])):
            if not isinstance(link, Mapping):
                continue
            path = first_text(link, GPO_LINK_FIELDS["path"])
            if not path:
                continue
            links.append(
                AssignmentRef(
                    target_type=TargetType.OU_LINK,
                    target_id=path,
                    resolved_name=first_text(link, GPO_LINK_FIELDS["name"]) or path,
                    enforced=as_bool(first_present(link, GPO_LINK_FIELDS["enforced"])),
                    enabled=as_bool(first_present(link, GPO_LINK_FIELDS["enabled"])),
                    order=as_int(first_present(link, GPO_LINK_FIELDS["order"])),
                )
            )
        return links

    def _gpo_settings(self, record: SourceRecord) -> List[SettingEntry]:
        data = record.data
        settings: List[SettingEntry] = []

        domain = first_text(data, GPO_FIELDS["domain"])
        if domain:
            settings.append(SettingEntry(name="Domain", value=domain, category="General"))

        wmi_name = first_text(data, GPO_FIELDS["wmiFilterName"])
        if not wmi_name:
            wmi_id = first_text(data, GPO_FIELDS["wmiFilterId"])
            wmi_name = self._resolver.resolve(IdKind.WMI_FILTER, wmi_id)
        if wmi_name:
            settings.append(SettingEntry(name="WMI filter", value=wmi_name, category="General"))

        scope = str(data.get("#scope") or "")
        if scope:
            # RSOP: one scope per record, extension data sits on the record
            label = scope.title()
            enabled = as_bool(data.get("Enabled"))
            if enabled is not None:
                settings.append(SettingEntry(name=f"{label} configuration enabled", value=enabled, category=label))
            settings.extend(self._extension_settings(label, as_list(data.get("ExtensionData"))))
            return settings

        for section_name in GPO_SECTIONS:
            section = data.get(section_name)
            if not isinstance(section, Mapping):
                continue
            enabled = as_bool(section.get("Enabled"))
            if enabled is not None:
                settings.append(SettingEntry(name=f"{section_name} configuration enabled", value=enabled, category=section_name))
            settings.extend(self._extension_settings(section_name, as_list(section.get("ExtensionData"))))
        return settings

    def _extension_settings(self, scope: str, extensions: Sequence[Any]) -> List[SettingEntry]:
        out: List[SettingEntry] = []
        for ext in extensions:
            if not isinstance(ext, Mapping):
                continue
            ext_name = first_text(ext, ("Name",)) or "Extension"
            category = f"{scope}/{ext_name}"
            for extension in as_list(ext.get("Extension")):
                if isinstance(extension, Mapping):
                    out.extend(self._rule_settings(extension, category, depth=1))
        return out

    def _rule_settings(self, container: Mapping[str, Any], category: str, *, depth: int) -> List[SettingEntry]:
        out: List[SettingEntry] = []
        for key, value in container.items():
            if key.startswith(("@", "#")):
                continue
            rule = GPO_SETTING_RULES.get(key)
            if rule is None:
                # Preference extensions nest items one level down (RegistrySettings/Registry)
                if depth > 0:
                    for nested in as_list(value):
                        if isinstance(nested, Mapping):
                            out.extend(self._rule_settings(nested, category, depth=depth - 1))
                continue
            for node in as_list(value):
                entry = self._apply_rule(rule, node, category)
                if entry is not None:
                    out.append(entry)
        return out

    @staticmethod
    def _apply_rule(rule: SettingRule, node: Any, category: str) -> Optional[SettingEntry]:
        if not isinstance(node, Mapping):
            return None
        name = first_text(node, rule.name)
        if not name:
            return None
        prefix = first_text(node, rule.prefix) if rule.prefix else ""
        if prefix:
            name = f"{prefix}\\{name}"
        sub_category = first_text(node, rule.category) if rule.category else ""
        return SettingEntry(
            name=name,
            value=_setting_value(first_present(node, rule.value)),
            category=f"{category}/{sub_category}" if sub_category else category,
        )


def canonicalize_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a shallow copy of record with fields ordered according to CANONICAL_FIELD_ORDER.
    Fields not in the canonical list are appended in sorted order.
    """
    out: Dict[str, Any] = {}
    for k in CANONICAL_FIELD_ORDER:
        if k in record:
            out[k] = record[k]
    for k in sorted(k for k in record.keys() if k not in out):
        out[k] = record[k]
    return out
