from __future__ import annotations

import pytest

from policy_inventory.pipeline.selection import NameSelector, load_names_csv


def test_selector_without_patterns_selects_all() -> None:
    for patterns in (None, [], ["  "], ["*"], ["All"]):
        selector = NameSelector(patterns)
        assert selector.selects_all
        assert selector.matches(None)
        assert selector.describe() == "all"


def test_selector_matches_wildcards_case_insensitively() -> None:
    selector = NameSelector(["Baseline*", "kiosk ?"])

    assert selector.matches("baseline - Workstations")
    assert selector.matches("KIOSK 1")
    assert not selector.matches("Kiosk 10")
    assert not selector.matches("")
    assert selector.describe() == "baseline*, kiosk ?"


def test_load_names_csv_picks_name_column(tmp_path) -> None:
    path = tmp_path / "names.csv"
    path.write_text("\ufeffDisplayName,Owner\nChrome,it\n,nobody\n  Zoom ,it\n", encoding="utf-8")

    assert load_names_csv(path) == ["Chrome", "Zoom"]


def test_load_names_csv_errors(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_names_csv(tmp_path / "missing.csv")

    path = tmp_path / "other.csv"
    path.write_text("Owner\nit\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_names_csv(path)
