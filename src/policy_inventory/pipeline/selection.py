from __future__ import annotations

import csv
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

ALL_TOKENS = {"*", "all"}
CSV_NAME_COLUMNS = ("Name", "DisplayName", "displayName", "name")


class NameSelector:
    """
    Case-insensitive wildcard selection on display names. No patterns, "*" or
    "all" select everything.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None) -> None:
        cleaned = [str(p).strip() for p in (patterns or []) if str(p).strip()]
        self._select_all = not cleaned or any(p.lower() in ALL_TOKENS for p in cleaned)
        self._patterns: List[str] = [p.casefold() for p in cleaned]

    @property
    def selects_all(self) -> bool:
        return self._select_all

    @property
    def patterns(self) -> Sequence[str]:
        return tuple(self._patterns)

    def matches(self, name: Optional[str]) -> bool:
        if self._select_all:
            return True
        text = (name or "").casefold()
        return any(fnmatchcase(text, p) for p in self._patterns)

    def describe(self) -> str:
        if self._select_all:
            return "all"
        return ", ".join(self._patterns)


def load_names_csv(path: Path, column: Optional[str] = None) -> List[str]:
    """
    Read names from a CSV export. Without an explicit column, the first of
    Name/DisplayName present in the header is used.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Names CSV not found: {path}")
    with path.open("r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        header = reader.fieldnames or []
        chosen = column
        if chosen is None:
            chosen = next((c for c in CSV_NAME_COLUMNS if c in header), None)
        if chosen is None or chosen not in header:
            raise ValueError(f"CSV {path} has no name column (expected one of: {', '.join(CSV_NAME_COLUMNS)})")
        return [row[chosen].strip() for row in reader if (row.get(chosen) or "").strip()]
