from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .schema import EntityType, SourceKind, TargetType

# A candidate is a field name or a path of nested field names.
Candidate = Union[str, Tuple[str, ...]]

ODATA_TYPE_KEY = "@odata.type"
ODATA_TYPE_PREFIX = "#microsoft.graph."


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def get_path(record: Any, candidate: Candidate) -> Any:
    path = (candidate,) if isinstance(candidate, str) else candidate
    current = record
    for key in path:
        if isinstance(current, list):
            current = current[0] if current else None
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def first_present(record: Any, candidates: Sequence[Candidate], default: Any = None) -> Any:
    """
    Return the value of the first candidate present with a non-empty value.
    """
    for candidate in candidates:
        value = get_path(record, candidate)
        if not is_empty(value):
            return value
    return default


def first_text(record: Any, candidates: Sequence[Candidate], default: str = "") -> str:
    value = first_present(record, candidates)
    if value is None:
        return default
    if isinstance(value, Mapping):
        # XML leaves with attributes keep their text under "#text"
        value = value.get("#text")
        if value is None:
            return default
    return str(value).strip()


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "enabled", "on"}:
        return True
    if text in {"false", "0", "no", "disabled", "off"}:
        return False
    return None


def as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


# ------------------------------------------------
# Canonical attribute -> ordered candidate fields
# ------------------------------------------------

GRAPH_FIELDS: Dict[str, Tuple[Candidate, ...]] = {
    "id": ("id", "Id", "ID"),
    "displayName": ("displayName", "name", "DisplayName", "Name"),
    "description": ("description", "Description"),
    "modified": ("lastModifiedDateTime", "modifiedDateTime", "createdDateTime"),
    "scopeTags": ("roleScopeTagIds", "roleScopeTags"),
    "assignments": ("assignments",),
}

GPO_FIELDS: Dict[str, Tuple[Candidate, ...]] = {
    "id": (
        "GUID",
        "Guid",
        "ID",
        "Id",
        ("Identifier", "Identifier"),
        ("Path", "Identifier"),
        "Identifier",
    ),
    "displayName": ("Name", "DisplayName", "displayName"),
    "description": ("Description", "Comment"),
    "modified": ("ModifiedTime", "Modified", "CreatedTime"),
    "domain": (("Identifier", "Domain"), ("Path", "Domain"), "Domain"),
    "links": ("LinksTo", "Link", "Links"),
    "wmiFilterName": ("FilterName", "WMIFilterName"),
    "wmiFilterId": ("FilterId", "WMIFilter", "WmiFilterId"),
}

GPO_LINK_FIELDS: Dict[str, Tuple[Candidate, ...]] = {
    "path": ("SOMPath", "Path", "Target"),
    "name": ("SOMName", "Name", "SOMPath"),
    "enforced": ("NoOverride", "Enforced"),
    "enabled": ("Enabled", "LinkEnabled"),
    "order": ("SOMOrder", "AppliedOrder", "Order"),
}

GRAPH_ASSIGNMENT_FIELDS: Dict[str, Tuple[Candidate, ...]] = {
    "targetType": (("target", ODATA_TYPE_KEY), ODATA_TYPE_KEY),
    "groupId": (("target", "groupId"), "groupId"),
    "filterId": (("target", "deviceAndAppManagementAssignmentFilterId"), "filterId"),
    "filterMode": (("target", "deviceAndAppManagementAssignmentFilterType"), "filterType"),
    "intent": ("intent",),
}

APP_SETTING_FIELDS: Tuple[Tuple[str, Tuple[Candidate, ...]], ...] = (
    ("Publisher", ("publisher", "publisherName", "developer")),
    ("Version", ("displayVersion", "productVersion", "versionNumber", "identityVersion", "bundleId")),
    ("File name", ("fileName", "setupFilePath")),
    ("Install command", ("installCommandLine", ("installExperience", "installCommandLine"))),
    ("Uninstall command", ("uninstallCommandLine",)),
    ("Run as", (("installExperience", "runAsAccount"),)),
    ("Package identifier", ("packageIdentifier", "productCode", "appStoreUrl", "appUrl")),
    ("Featured", ("isFeatured",)),
)

# Properties never reported as settings of a Graph profile.
GRAPH_METADATA_FIELDS = frozenset(
    {
        "id",
        "displayName",
        "name",
        "description",
        "createdDateTime",
        "lastModifiedDateTime",
        "modifiedDateTime",
        "version",
        "roleScopeTagIds",
        "assignments",
        "settings",
        "definitionValues",
        "omaSettings",
        "supportsScopeTags",
        "deviceManagementApplicabilityRuleOsEdition",
        "deviceManagementApplicabilityRuleOsVersion",
        "deviceManagementApplicabilityRuleDeviceMode",
        "largeIcon",
    }
)

ASSIGNMENT_TARGET_TYPES: Dict[str, TargetType] = {
    "groupAssignmentTarget": TargetType.GROUP,
    "exclusionGroupAssignmentTarget": TargetType.EXCLUSION_GROUP,
    "allDevicesAssignmentTarget": TargetType.ALL_DEVICES,
    "allLicensedUsersAssignmentTarget": TargetType.ALL_USERS,
    "allUsersAssignmentTarget": TargetType.ALL_USERS,
}


@dataclass(frozen=True)
class SettingRule:
    """How to read one kind of GPO setting node."""

    name: Tuple[Candidate, ...]
    value: Tuple[Candidate, ...]
    prefix: Tuple[Candidate, ...] = ()
    category: Tuple[Candidate, ...] = ()


# Keyed on the setting node's local name inside an <Extension>.
GPO_SETTING_RULES: Dict[str, SettingRule] = {
    "Policy": SettingRule(name=("Name",), value=("State", "Value"), category=("Category",)),
    "RegistrySetting": SettingRule(
        name=(("Value", "Name"), "ValueName"),
        value=(("Value", "String"), ("Value", "Number"), ("Value", "Binary"), "Value"),
        prefix=("KeyPath",),
    ),
    "SecurityOptions": SettingRule(
        name=(("Display", "Name"), "KeyName", "SystemAccessPolicyName"),
        value=(
            ("Display", "DisplayString"),
            ("Display", "DisplayBoolean"),
            ("Display", "DisplayNumber"),
            "SettingString",
            "SettingNumber",
            "SettingBoolean",
        ),
    ),
    "Account": SettingRule(name=("Name",), value=("SettingNumber", "SettingBoolean", "SettingString"), category=("Type",)),
    "Audit": SettingRule(name=("Name",), value=("SuccessAttempts", "FailureAttempts", "SettingValue")),
    "AuditSetting": SettingRule(name=("SubcategoryName", "Name"), value=("SettingValue",)),
    "UserRightsAssignment": SettingRule(name=("Name",), value=("Member",)),
    "Script": SettingRule(name=("Command", "Name"), value=("Parameters", "Type"), category=("Type",)),
    "Registry": SettingRule(
        name=(("Properties", "@name"), ("Properties", "@key"), "@name"),
        value=(("Properties", "@value"), ("Properties", "@action")),
        prefix=(("Properties", "@key"),),
    ),
}


# ------------------------------------------------
# Type classification
# ------------------------------------------------


class TypeTable:
    """
    Longest-prefix classification of a discriminator string. Matching is
    case-insensitive; an unmatched discriminator maps to EntityType.UNKNOWN.
    """

    def __init__(self, entries: Iterable[Tuple[str, EntityType]]) -> None:
        self._entries: List[Tuple[str, EntityType]] = sorted(
            ((prefix.lower(), etype) for prefix, etype in entries),
            key=lambda e: (-len(e[0]), e[0]),
        )

    def classify(self, discriminator: Optional[str]) -> EntityType:
        text = strip_odata_prefix(discriminator).lower()
        if not text:
            return EntityType.UNKNOWN
        for prefix, etype in self._entries:
            if text.startswith(prefix):
                return etype
        return EntityType.UNKNOWN


def strip_odata_prefix(value: Optional[str]) -> str:
    text = str(value or "").strip()
    if text.startswith(ODATA_TYPE_PREFIX):
        return text[len(ODATA_TYPE_PREFIX) :]
    return text.lstrip("#")


_PLATFORMS = ("windows", "ios", "android", "aosp", "macOS")

TYPE_TABLES: Dict[SourceKind, TypeTable] = {
    SourceKind.GRAPH_DEVICE_CONFIGURATION: TypeTable(
        [(p, EntityType.DEVICE_CONFIGURATION) for p in _PLATFORMS]
        + [
            ("windows10Custom", EntityType.CUSTOM_PROFILE),
            ("windows10EndpointProtection", EntityType.ENDPOINT_PROTECTION),
            ("windowsUpdateForBusiness", EntityType.UPDATE_RING),
            ("iosCustom", EntityType.CUSTOM_PROFILE),
            ("macOSCustom", EntityType.CUSTOM_PROFILE),
            ("androidCustom", EntityType.CUSTOM_PROFILE),
            ("editionUpgrade", EntityType.DEVICE_CONFIGURATION),
            ("sharedPC", EntityType.DEVICE_CONFIGURATION),
        ]
    ),
    SourceKind.GRAPH_COMPLIANCE_POLICY: TypeTable([(p, EntityType.COMPLIANCE_POLICY) for p in _PLATFORMS]),
    SourceKind.GRAPH_CONFIGURATION_POLICY: TypeTable(
        [("deviceManagementConfigurationPolicy", EntityType.SETTINGS_CATALOG)]
    ),
    SourceKind.GRAPH_GROUP_POLICY_CONFIGURATION: TypeTable(
        [("groupPolicyConfiguration", EntityType.ADMINISTRATIVE_TEMPLATE)]
    ),
    SourceKind.GRAPH_MOBILE_APP: TypeTable(
        [
            ("win32LobApp", EntityType.WIN32_APP),
            ("win32CatalogApp", EntityType.WIN32_APP),
            ("windowsMobileMSI", EntityType.MSI_APP),
            ("winGetApp", EntityType.WINGET_APP),
            ("microsoftStoreForBusinessApp", EntityType.STORE_APP),
            ("windowsStoreApp", EntityType.STORE_APP),
            ("officeSuiteApp", EntityType.OFFICE_SUITE_APP),
            ("webApp", EntityType.WEB_APP),
            ("windowsWebApp", EntityType.WEB_APP),
            ("ios", EntityType.IOS_APP),
            ("managedIOS", EntityType.IOS_APP),
            ("android", EntityType.ANDROID_APP),
            ("managedAndroid", EntityType.ANDROID_APP),
            ("macOS", EntityType.MACOS_APP),
        ]
    ),
    SourceKind.GPO_REPORT: TypeTable([("GPO", EntityType.GROUP_POLICY_OBJECT)]),
    SourceKind.RSOP_COMPUTER: TypeTable([("GPO", EntityType.GROUP_POLICY_OBJECT)]),
    SourceKind.RSOP_USER: TypeTable([("GPO", EntityType.GROUP_POLICY_OBJECT)]),
}

# Collections whose list payload omits @odata.type.
DEFAULT_DISCRIMINATORS: Dict[SourceKind, str] = {
    SourceKind.GRAPH_CONFIGURATION_POLICY: "deviceManagementConfigurationPolicy",
    SourceKind.GRAPH_GROUP_POLICY_CONFIGURATION: "groupPolicyConfiguration",
}


def classify(source_kind: SourceKind, discriminator: Optional[str]) -> EntityType:
    table = TYPE_TABLES.get(source_kind)
    if table is None:
        return EntityType.UNKNOWN
    return table.classify(discriminator or DEFAULT_DISCRIMINATORS.get(source_kind))
