from __future__ import annotations

from policy_inventory.normalize.fields import (
    GPO_FIELDS,
    as_bool,
    as_int,
    classify,
    first_present,
    first_text,
    get_path,
    strip_odata_prefix,
)
from policy_inventory.normalize.schema import EntityType, SourceKind


def test_gpo_id_falls_back_to_guid_when_uppercase_key_absent() -> None:
    record = {"Guid": "{31B2F340-016D-11D2-945F-00C04FB984F9}", "Name": "Default Domain Policy"}

    assert first_text(record, GPO_FIELDS["id"]) == "{31B2F340-016D-11D2-945F-00C04FB984F9}"


def test_gpo_id_prefers_first_candidate() -> None:
    record = {"GUID": "first", "Guid": "second", "Identifier": {"Identifier": "third"}}

    assert first_text(record, GPO_FIELDS["id"]) == "first"


def test_gpo_id_reads_nested_identifier() -> None:
    record = {"Identifier": {"Identifier": "{ABC}", "Domain": "contoso.com"}}

    assert first_text(record, GPO_FIELDS["id"]) == "{ABC}"
    assert first_text(record, GPO_FIELDS["domain"]) == "contoso.com"


def test_empty_candidates_are_skipped() -> None:
    record = {"displayName": "  ", "name": "Fallback"}

    assert first_text(record, ("displayName", "name")) == "Fallback"
    assert first_present(record, ("missing",), default="dflt") == "dflt"


def test_first_text_reads_text_of_attributed_leaf() -> None:
    record = {"Name": {"@lang": "en", "#text": "Baseline"}}

    assert first_text(record, ("Name",)) == "Baseline"


def test_get_path_takes_first_element_of_lists() -> None:
    record = {"Path": [{"Identifier": "one"}, {"Identifier": "two"}]}

    assert get_path(record, ("Path", "Identifier")) == "one"
    assert get_path(record, ("Path", "Missing")) is None
    assert get_path("not a mapping", "x") is None


def test_as_bool_and_as_int() -> None:
    assert as_bool("true") is True
    assert as_bool("False") is False
    assert as_bool("maybe") is None
    assert as_int("3") == 3
    assert as_int("x") is None
    assert as_int(True) is None


def test_strip_odata_prefix() -> None:
    assert strip_odata_prefix("#microsoft.graph.win32LobApp") == "win32LobApp"
    assert strip_odata_prefix("#other.type") == "other.type"
    assert strip_odata_prefix(None) == ""


def test_classify_uses_longest_prefix() -> None:
    assert classify(SourceKind.GRAPH_DEVICE_CONFIGURATION, "#microsoft.graph.windows10CustomConfiguration") == (
        EntityType.CUSTOM_PROFILE
    )
    assert classify(SourceKind.GRAPH_DEVICE_CONFIGURATION, "#microsoft.graph.windows10GeneralConfiguration") == (
        EntityType.DEVICE_CONFIGURATION
    )
    assert classify(SourceKind.GRAPH_MOBILE_APP, "#microsoft.graph.win32LobApp") == EntityType.WIN32_APP


def test_classify_unknown_discriminator_falls_back() -> None:
    assert classify(SourceKind.GRAPH_MOBILE_APP, "#microsoft.graph.somethingNew") == EntityType.UNKNOWN
    assert classify(SourceKind.GRAPH_MOBILE_APP, None) == EntityType.UNKNOWN


def test_classify_uses_collection_default_when_type_missing() -> None:
    assert classify(SourceKind.GRAPH_CONFIGURATION_POLICY, None) == EntityType.SETTINGS_CATALOG
    assert classify(SourceKind.GPO_REPORT, "GPO") == EntityType.GROUP_POLICY_OBJECT
