from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .normalize.schema import SourceKind
from .sources.graph import DEFAULT_GRAPH_BASE_URL

# --------
# Defaults
# --------
DEFAULT_WORKERS_DETAIL = 8
DEFAULT_WORKERS_NORMALIZE = 4
SOURCES = ("graph", "json", "gpo", "rsop")
GRAPH_TOKEN_ENV = "POLICY_INV_GRAPH_TOKEN"

# Source kinds each source type can serve, in default request order.
SOURCE_KINDS: Dict[str, Tuple[SourceKind, ...]] = {
    "graph": tuple(k for k in SourceKind if k.is_graph),
    "json": tuple(k for k in SourceKind if k.is_graph),
    "gpo": (SourceKind.GPO_REPORT,),
    "rsop": (SourceKind.RSOP_COMPUTER, SourceKind.RSOP_USER),
}

ALLOWED_CONFIG_KEYS = {
    "outdir",
    "source",
    "input_path",
    "collections",
    "names",
    "names_csv",
    "lookup_index",
    "parquet",
    "json_logs",
    "log_level",
    "progress",
    "workers_detail",
    "workers_normalize",
    "graph_base_url",
}
BOOL_CONFIG_KEYS = {"parquet", "json_logs", "progress"}
INT_CONFIG_KEYS = {"workers_detail", "workers_normalize"}
PATH_CONFIG_KEYS = {"outdir", "input_path", "names_csv", "lookup_index"}
STR_CONFIG_KEYS = {"source", "log_level", "graph_base_url"}
LIST_CONFIG_KEYS = {"collections", "names"}


@dataclass(frozen=True)
class RunConfig:
    # General
    outdir: Path
    source: str = "graph"
    input_path: Optional[Path] = None
    collections: Tuple[SourceKind, ...] = SOURCE_KINDS["graph"]
    parquet: bool = False
    json_logs: bool = False
    log_level: str = "INFO"
    progress: bool = True

    # Selection
    names: Optional[List[str]] = None
    names_csv: Optional[Path] = None

    # Resolution
    lookup_index: Optional[Path] = None
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    graph_token: Optional[str] = field(default=None, repr=False)

    # Performance
    workers_detail: int = DEFAULT_WORKERS_DETAIL
    workers_normalize: int = DEFAULT_WORKERS_NORMALIZE

    # Internal/derived
    collected_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # YAML is a superset of JSON
            data = yaml.safe_load(text) or {}
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ValueError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ValueError(f"Config field '{key}' must be an integer")


def _split_list(key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return [v.strip() for v in value if v.strip()]
    raise ValueError(f"Config field '{key}' must be a list of strings or comma-separated string")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
            continue
        if key in LIST_CONFIG_KEYS:
            normalized[key] = _split_list(key, value)
        elif key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in PATH_CONFIG_KEYS:
            if isinstance(value, (str, Path)):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string path")
        elif key in STR_CONFIG_KEYS:
            if isinstance(value, str):
                normalized[key] = value
            else:
                raise ValueError(f"Config field '{key}' must be a string")
        else:
            normalized[key] = value
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _timestamp_dir(base: Optional[Union[str, Path]]) -> Path:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    if base:
        return Path(base) / ts
    return Path("out") / ts


def resolve_collections(source: str, names: Optional[List[str]]) -> Tuple[SourceKind, ...]:
    """
    Map collection names to source kinds for a source type. Names may be full
    values ("graph.mobileApp") or the part after the dot ("mobileApp").
    """
    allowed = SOURCE_KINDS[source]
    if not names:
        return allowed
    by_name: Dict[str, SourceKind] = {}
    for kind in allowed:
        by_name[kind.value.lower()] = kind
        by_name[kind.value.split(".", 1)[1].lower()] = kind
    out: List[SourceKind] = []
    for name in names:
        kind = by_name.get(name.strip().lower())
        if kind is None:
            choices = ", ".join(k.value for k in allowed)
            raise ValueError(f"Unknown collection '{name}' for source '{source}' (choose from: {choices})")
        if kind not in out:
            out.append(kind)
    return tuple(out)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="policy-inv", description="Policy inventory export CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")

    # export
    p_exp = subparsers.add_parser("export", help="Export policies to a report")
    add_common(p_exp)
    p_exp.add_argument("--outdir", type=Path, default=None, help="Output base directory (out/TS)")
    p_exp.add_argument("--source", default=None, choices=list(SOURCES), help="Where records come from (default graph)")
    p_exp.add_argument("--input", dest="input_path", type=Path, default=None, help="Input file or directory for offline sources")
    p_exp.add_argument(
        "--collections",
        default=None,
        help="Comma-separated collections to export (default: all for the source)",
    )
    p_exp.add_argument("--names", default=None, help="Comma-separated display-name patterns (wildcards allowed)")
    p_exp.add_argument("--names-csv", type=Path, default=None, help="CSV file with a Name column to select by")
    p_exp.add_argument("--lookup-index", type=Path, default=None, help="YAML/JSON map of id kind -> {id: name}")
    p_exp.add_argument(
        "--parquet",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also write Parquet (pyarrow)",
    )
    p_exp.add_argument(
        "--progress",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Show progress and summary table",
    )
    p_exp.add_argument(
        "--workers-detail", type=int, default=None, help=f"Max detail fetch workers (default {DEFAULT_WORKERS_DETAIL})"
    )
    p_exp.add_argument(
        "--workers-normalize",
        type=int,
        default=None,
        help=f"Max normalization workers (default {DEFAULT_WORKERS_NORMALIZE})",
    )
    p_exp.add_argument("--graph-base-url", default=None, help=f"Graph base URL (default {DEFAULT_GRAPH_BASE_URL})")

    # list-collections
    p_lc = subparsers.add_parser("list-collections", help="List collections per source")
    add_common(p_lc)

    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
    subcommand: Optional[str] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is the subcommand selected: export|list-collections
    """
    ns = args if args is not None else build_parser().parse_args(argv)
    command = ns.command if subcommand is None else subcommand

    # defaults
    base: Dict[str, Any] = {
        "outdir": None,
        "source": "graph",
        "input_path": None,
        "collections": None,
        "names": None,
        "names_csv": None,
        "lookup_index": None,
        "parquet": False,
        "json_logs": False,
        "log_level": "INFO",
        "progress": True,
        "workers_detail": DEFAULT_WORKERS_DETAIL,
        "workers_normalize": DEFAULT_WORKERS_NORMALIZE,
        "graph_base_url": DEFAULT_GRAPH_BASE_URL,
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "outdir": _env_str("POLICY_INV_OUTDIR"),
            "source": _env_str("POLICY_INV_SOURCE"),
            "input_path": _env_str("POLICY_INV_INPUT"),
            "collections": _env_str("POLICY_INV_COLLECTIONS"),
            "names": _env_str("POLICY_INV_NAMES"),
            "names_csv": _env_str("POLICY_INV_NAMES_CSV"),
            "lookup_index": _env_str("POLICY_INV_LOOKUP_INDEX"),
            "parquet": _env_bool("POLICY_INV_PARQUET"),
            "json_logs": _env_bool("POLICY_INV_JSON_LOGS"),
            "log_level": _env_str("POLICY_INV_LOG_LEVEL"),
            "progress": _env_bool("POLICY_INV_PROGRESS"),
            "workers_detail": _env_int("POLICY_INV_WORKERS_DETAIL"),
            "workers_normalize": _env_int("POLICY_INV_WORKERS_NORMALIZE"),
            "graph_base_url": _env_str("POLICY_INV_GRAPH_BASE_URL"),
        }
    )

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "outdir": getattr(ns, "outdir", None),
            "source": getattr(ns, "source", None),
            "input_path": getattr(ns, "input_path", None),
            "collections": getattr(ns, "collections", None),
            "names": getattr(ns, "names", None),
            "names_csv": getattr(ns, "names_csv", None),
            "lookup_index": getattr(ns, "lookup_index", None),
            "parquet": getattr(ns, "parquet", None),
            "json_logs": getattr(ns, "json_logs", None),
            "log_level": getattr(ns, "log_level", None),
            "progress": getattr(ns, "progress", None),
            "workers_detail": getattr(ns, "workers_detail", None),
            "workers_normalize": getattr(ns, "workers_normalize", None),
            "graph_base_url": getattr(ns, "graph_base_url", None),
        }
    )

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    # Normalize/construct types
    source = str(merged.get("source") or "graph").lower()
    if source not in SOURCES:
        raise ValueError(f"source must be one of: {', '.join(SOURCES)}")
    if source != "graph" and command == "export" and not merged.get("input_path"):
        raise ValueError(f"source '{source}' requires --input (or input_path in config)")

    outdir_raw = merged.get("outdir")
    outdir = _timestamp_dir(outdir_raw) if command == "export" else Path(outdir_raw) if outdir_raw else Path.cwd()
    collections_raw = merged.get("collections")
    collections = resolve_collections(
        source, _split_list("collections", collections_raw) if collections_raw is not None else None
    )
    names_raw = merged.get("names")
    names = _split_list("names", names_raw) if names_raw is not None else None

    def _path(key: str) -> Optional[Path]:
        return Path(merged[key]) if merged.get(key) else None

    def _workers(key: str, default: int) -> int:
        value = merged.get(key)
        return int(value) if value is not None else default

    workers_detail = _workers("workers_detail", DEFAULT_WORKERS_DETAIL)
    workers_normalize = _workers("workers_normalize", DEFAULT_WORKERS_NORMALIZE)
    if workers_detail < 1 or workers_normalize < 1:
        raise ValueError("worker counts must be >= 1")

    cfg = RunConfig(
        outdir=outdir,
        source=source,
        input_path=_path("input_path"),
        collections=collections,
        parquet=bool(merged["parquet"]),
        json_logs=bool(merged["json_logs"]),
        log_level=(merged.get("log_level") or "INFO").upper(),
        progress=bool(merged["progress"]),
        names=names or None,
        names_csv=_path("names_csv"),
        lookup_index=_path("lookup_index"),
        graph_base_url=str(merged.get("graph_base_url") or DEFAULT_GRAPH_BASE_URL),
        graph_token=_env_str(GRAPH_TOKEN_ENV),
        workers_detail=workers_detail,
        workers_normalize=workers_normalize,
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "outdir": str(cfg.outdir),
        "source": cfg.source,
        "input_path": str(cfg.input_path) if cfg.input_path else None,
        "collections": [k.value for k in cfg.collections],
        "names": cfg.names,
        "names_csv": str(cfg.names_csv) if cfg.names_csv else None,
        "lookup_index": str(cfg.lookup_index) if cfg.lookup_index else None,
        "parquet": cfg.parquet,
        "json_logs": cfg.json_logs,
        "log_level": cfg.log_level,
        "progress": cfg.progress,
        "workers_detail": cfg.workers_detail,
        "workers_normalize": cfg.workers_normalize,
        "graph_base_url": cfg.graph_base_url,
        "graph_token": "<set>" if cfg.graph_token else None,
        "collected_at": cfg.collected_at,
    }
