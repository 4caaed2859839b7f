from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, List, Union

from ..util.errors import NormalizationError

XmlInput = Union[str, bytes, Path, ET.Element]


def local_name(tag: str) -> str:
    """
    Strip an XML namespace ("{uri}Name") or prefix ("q1:Name") from a tag.
    """
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    if ":" in tag:
        tag = tag.rsplit(":", 1)[1]
    return tag


def element_to_mapping(element: ET.Element) -> Any:
    """
    Flatten an element into plain Python data keyed by local names.

    - a leaf without attributes becomes its stripped text
    - attributes are kept as "@name"; a leaf with attributes keeps its text as "#text"
    - repeated child names become lists, in document order
    """
    children = list(element)
    attrs = {f"@{local_name(k)}": v for k, v in element.attrib.items()}
    text = (element.text or "").strip()
    if not children:
        if not attrs:
            return text
        if text:
            attrs["#text"] = text
        return attrs

    grouped: Dict[str, List[Any]] = {}
    for child in children:
        grouped.setdefault(local_name(child.tag), []).append(element_to_mapping(child))
    out: Dict[str, Any] = dict(attrs)
    for key, values in grouped.items():
        out[key] = values[0] if len(values) == 1 else values
    return out


def _parse_root(source: XmlInput) -> ET.Element:
    if isinstance(source, ET.Element):
        return source
    try:
        if isinstance(source, Path):
            return ET.parse(source).getroot()
        return ET.fromstring(source)
    except ET.ParseError as e:
        raise NormalizationError(f"Invalid GPO XML: {e}") from e


def _gpo_elements(root: ET.Element) -> List[ET.Element]:
    if local_name(root.tag) == "GPO":
        return [root]
    # Get-GPOReport -All wraps reports in a <report>/<GPOS> container
    return [el for el in root.iter() if local_name(el.tag) == "GPO" and el is not root]


def parse_gpo_report(source: XmlInput) -> List[Dict[str, Any]]:
    """
    Parse Get-GPOReport XML (single GPO or an -All container) into one mapping
    per GPO. The "#node" key records the discriminator (element local name).
    """
    root = _parse_root(source)
    out: List[Dict[str, Any]] = []
    for el in _gpo_elements(root):
        data = element_to_mapping(el)
        if not isinstance(data, dict):
            data = {"#text": data}
        data["#node"] = local_name(el.tag)
        out.append(data)
    return out


RSOP_SCOPES = {"computer": "ComputerResults", "user": "UserResults"}


def parse_rsop_report(source: XmlInput, scope: str) -> List[Dict[str, Any]]:
    """
    Parse Get-GPResultantSetOfPolicy XML and return the GPOs applied in one
    scope ("computer" or "user"). Extension data of the scope is attached to
    every GPO under "ExtensionData", filtered to settings whose <GPO> back
    reference names that GPO when the reference is present.
    """
    section_name = RSOP_SCOPES.get(scope.lower())
    if section_name is None:
        raise ValueError(f"Unknown RSOP scope: {scope}")
    root = _parse_root(source)
    sections = [el for el in root.iter() if local_name(el.tag) == section_name]
    out: List[Dict[str, Any]] = []
    for section in sections:
        extensions = [element_to_mapping(el) for el in section if local_name(el.tag) == "ExtensionData"]
        for el in section:
            if local_name(el.tag) != "GPO":
                continue
            data = element_to_mapping(el)
            if not isinstance(data, dict):
                continue
            data["#node"] = "GPO"
            data["#scope"] = scope.lower()
            gpo_id = _rsop_gpo_id(data)
            data["ExtensionData"] = [_filter_extension(ext, gpo_id) for ext in extensions]
            out.append(data)
    return out


def _rsop_gpo_id(data: Dict[str, Any]) -> str:
    path = data.get("Path")
    if isinstance(path, dict):
        ident = path.get("Identifier")
        if isinstance(ident, dict):
            ident = ident.get("#text")
        return canonical_guid(ident)
    return ""


def _filter_extension(ext: Any, gpo_id: str) -> Any:
    if not gpo_id or not isinstance(ext, dict):
        return ext
    extension = ext.get("Extension")
    if not isinstance(extension, dict):
        return ext
    filtered: Dict[str, Any] = {}
    for key, value in extension.items():
        if key.startswith("@") or not isinstance(value, (dict, list)):
            filtered[key] = value
            continue
        nodes = value if isinstance(value, list) else [value]
        kept = [n for n in nodes if _belongs_to(n, gpo_id)]
        if kept:
            filtered[key] = kept
    out = dict(ext)
    out["Extension"] = filtered
    return out


def _belongs_to(node: Any, gpo_id: str) -> bool:
    if not isinstance(node, dict):
        return True
    ref = node.get("GPO")
    if not isinstance(ref, dict):
        return True
    ident = ref.get("Identifier")
    if isinstance(ident, dict):
        ident = ident.get("#text")
    return not ident or canonical_guid(ident) == gpo_id


def canonical_guid(value: Any) -> str:
    """
    "{31b2f340-016d-11d2-945f-00c04fb984f9}" -> "31B2F340-016D-11D2-945F-00C04FB984F9"
    """
    text = str(value or "").strip()
    if text.startswith("{") and text.endswith("}"):
        text = text[1:-1]
    return text.strip().upper()
