from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..logging import get_logger
from ..normalize.fields import GPO_FIELDS, first_text
from ..normalize.gpo_xml import canonical_guid, parse_gpo_report, parse_rsop_report
from ..normalize.schema import SourceKind
from ..util.pagination import Page, PageRequest

LOG = get_logger(__name__)

JSON_NEXT_KEYS = ("@odata.nextLink", "nextPage", "next")


class JsonPageSource:
    """
    Offline pages saved as JSON files under root. A file is either a bare list
    of items (single page) or a Graph-style envelope {"value": [...]} whose
    next key names the following file, relative to root.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    def get_page(self, request: PageRequest, continuation: Optional[str]) -> Page:
        name = continuation or request.endpoint
        if name.startswith(("https://", "http://")):
            raise ValueError(f"Cannot follow a remote continuation offline: {name}")
        path = self._root / name if not Path(name).is_absolute() else Path(name)
        data = json.loads(path.read_text(encoding="utf-8-sig"))
        if isinstance(data, list):
            return Page(items=[it for it in data if isinstance(it, dict)], next_token=None)
        if not isinstance(data, dict):
            raise ValueError(f"{path.name}: expected a JSON list or object")
        items = data.get("value")
        if not isinstance(items, list):
            raise ValueError(f"{path.name}: 'value' must be a list")
        next_token = next((data[k] for k in JSON_NEXT_KEYS if data.get(k)), None)
        return Page(items=[it for it in items if isinstance(it, dict)], next_token=next_token)


ReportParser = Callable[[Path, PageRequest], List[Dict[str, Any]]]


class XmlReportSource:
    """
    One page per XML file, parsed by parse(path, request). The continuation
    token is the index of the next file in sorted order.
    """

    def __init__(self, path: Path, parse: ReportParser) -> None:
        self._path = path
        self._parse = parse

    def _files(self, request: PageRequest) -> List[Path]:
        if self._path.is_dir():
            pattern = request.endpoint or "*.xml"
            return sorted(p for p in self._path.glob(pattern) if p.is_file())
        if self._path.is_file():
            return [self._path]
        raise FileNotFoundError(f"Input not found: {self._path}")

    def get_page(self, request: PageRequest, continuation: Optional[str]) -> Page:
        files = self._files(request)
        index = int(continuation) if continuation else 0
        if index >= len(files):
            return Page(items=[], next_token=None)
        items = self._parse(files[index], request)
        LOG.debug("Parsed XML report", extra={"step": "fetch", "phase": "page", "file": files[index].name, "items": len(items)})
        next_token = str(index + 1) if index + 1 < len(files) else None
        return Page(items=items, next_token=next_token)


class GpoReportSource(XmlReportSource):
    """Get-GPOReport -ReportType Xml output: a file or a directory of files."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, lambda report, request: parse_gpo_report(report))


RSOP_SCOPE_BY_KIND = {SourceKind.RSOP_COMPUTER: "computer", SourceKind.RSOP_USER: "user"}


def _parse_rsop(path: Path, request: PageRequest) -> List[Dict[str, Any]]:
    scope = RSOP_SCOPE_BY_KIND.get(request.source_kind)
    if scope is None:
        raise ValueError(f"RSOP source cannot serve {request.source_kind.value}")
    return parse_rsop_report(path, scope)


class RsopReportSource(XmlReportSource):
    """Get-GPResultantSetOfPolicy -ReportType Xml output, one scope per request."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, _parse_rsop)


def gpo_name_index(records: Iterable[Mapping[str, Any]]) -> Dict[str, str]:
    """
    GUID -> name map from parsed GPO reports, for resolving RSOP entries that
    carry only an identifier.
    """
    index: Dict[str, str] = {}
    for data in records:
        guid = canonical_guid(first_text(data, GPO_FIELDS["id"]))
        name = first_text(data, GPO_FIELDS["displayName"])
        if guid and name:
            index.setdefault(guid, name)
    return index


def load_gpo_name_index(path: Path) -> Dict[str, str]:
    files = sorted(path.glob("*.xml")) if path.is_dir() else [path]
    records: List[Dict[str, Any]] = []
    for f in files:
        records.extend(parse_gpo_report(f))
    return gpo_name_index(records)
