from __future__ import annotations

import logging
import signal
import sys
import threading
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .config import SOURCE_KINDS, SOURCES, RunConfig, dump_config, load_run_config
from .details import DetailRegistry
from .details.graph import build_graph_detail_registry
from .export.csv import write_csv
from .export.documents import write_documents
from .export.jsonl import write_jsonl
from .export.parquet import ParquetNotAvailable, write_parquet
from .logging import LogConfig, StepTimers, add_run_log_file, get_logger, log_event, setup_logging
from .normalize.schema import ReportDocument, ReportMetadata, resolve_output_paths
from .normalize.transform import SchemaNormalizer
from .pipeline.events import CompositeObserver, LoggingObserver, Observer
from .pipeline.failures import FailureCollector
from .pipeline.run import ExportPipeline
from .pipeline.selection import NameSelector, load_names_csv
from .resolve.cache import IdKind, IdLookup, ReferenceResolverCache
from .resolve.lookups import GRAPH_LOOKUP_COLLECTIONS, GraphIdLookup, MappingIdLookup, RoutingIdLookup
from .sources.graph import GraphClient, GraphPageSource, graph_requests
from .sources.local import GpoReportSource, JsonPageSource, RsopReportSource, load_gpo_name_index
from .util.errors import ConfigError, ExportError, RunAborted, as_exit_code
from .util.pagination import PagedFetcher, PageRequest, PageSource
from .util.rich_progress import RichProgressObserver, render_run_summary_table

LOG = get_logger(__name__)

TOOL_NAME = "policy-inv"
GRAPH_TIMEOUT_SECONDS = 60.0


def tool_version() -> str:
    try:
        return version("policy-inventory")
    except PackageNotFoundError:
        return ""


@dataclass
class SourceSetup:
    source: PageSource
    requests: List[PageRequest]
    lookup: IdLookup
    details: Optional[DetailRegistry] = None


def load_lookup_index(path: Optional[Path]) -> Dict[IdKind, Dict[str, str]]:
    """
    Read an offline id -> name index: {"group": {"<id>": "<name>"}, "gpo": {...}}.
    The "gpo" entry may instead name a Get-GPOReport XML file or directory
    (relative to the index file) from which GUID -> name pairs are read.
    """
    if path is None:
        return {}
    if not path.is_file():
        raise ConfigError(f"Lookup index not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse lookup index {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Lookup index must be an object keyed by id kind")
    out: Dict[IdKind, Dict[str, str]] = {}
    for key, mapping in data.items():
        try:
            kind = IdKind(str(key))
        except ValueError as e:
            raise ConfigError(f"Unknown id kind in lookup index: {key}") from e
        if kind == IdKind.GPO and isinstance(mapping, str):
            reports = path.parent / mapping
            if not reports.exists():
                raise ConfigError(f"GPO report path in lookup index not found: {reports}")
            out[kind] = load_gpo_name_index(reports)
            continue
        if not isinstance(mapping, dict):
            raise ConfigError(f"Lookup index entry '{key}' must be an object")
        out[kind] = {str(k): str(v) for k, v in mapping.items()}
    return out


def _json_requests(cfg: RunConfig, root: Path) -> List[PageRequest]:
    if root.is_file():
        if len(cfg.collections) != 1:
            raise ConfigError("A single JSON input file needs exactly one --collections entry")
        return [PageRequest(source_kind=cfg.collections[0], endpoint=root.name)]
    out: List[PageRequest] = []
    for kind in cfg.collections:
        name = f"{kind.value}.json"
        if (root / name).is_file():
            out.append(PageRequest(source_kind=kind, endpoint=name))
        else:
            LOG.info("No export file for collection", extra={"step": "fetch", "phase": "skipped", "file": name})
    if not out:
        raise ConfigError(f"No <collection>.json files found under {root}")
    return out


def build_source(cfg: RunConfig) -> SourceSetup:
    index = MappingIdLookup(load_lookup_index(cfg.lookup_index))
    if cfg.source == "graph":
        if not cfg.graph_token:
            raise ConfigError("POLICY_INV_GRAPH_TOKEN must be set for the graph source")
        client = GraphClient(cfg.graph_token, base_url=cfg.graph_base_url, timeout=GRAPH_TIMEOUT_SECONDS)
        graph_lookup = GraphIdLookup(client)
        lookup = RoutingIdLookup({kind: graph_lookup for kind in GRAPH_LOOKUP_COLLECTIONS}, default=index)
        return SourceSetup(
            source=GraphPageSource(client),
            requests=graph_requests(cfg.collections),
            lookup=lookup,
            details=build_graph_detail_registry(client),
        )

    input_path = cfg.input_path
    if input_path is None or not input_path.exists():
        raise ConfigError(f"Input not found: {input_path}")
    if cfg.source == "json":
        root = input_path.parent if input_path.is_file() else input_path
        return SourceSetup(source=JsonPageSource(root), requests=_json_requests(cfg, input_path), lookup=index)
    if cfg.source == "gpo":
        requests = [PageRequest(source_kind=kind, endpoint="*.xml") for kind in cfg.collections]
        return SourceSetup(source=GpoReportSource(input_path), requests=requests, lookup=index)
    if cfg.source == "rsop":
        requests = [PageRequest(source_kind=kind, endpoint="*.xml") for kind in cfg.collections]
        return SourceSetup(source=RsopReportSource(input_path), requests=requests, lookup=index)
    raise ConfigError(f"Unknown source: {cfg.source}")


def build_selector(cfg: RunConfig) -> NameSelector:
    patterns: List[str] = list(cfg.names or [])
    if cfg.names_csv is not None:
        patterns.extend(load_names_csv(cfg.names_csv))
    return NameSelector(patterns)


def write_outputs(document: ReportDocument, cfg: RunConfig) -> Dict[str, str]:
    paths = resolve_output_paths(cfg.outdir)
    written: Dict[str, str] = {"index": str(write_documents(document, cfg.outdir))}
    try:
        write_jsonl(document.entities, paths.entities_jsonl)
        write_csv(document.entities, paths.entities_csv)
    except OSError as e:
        raise ExportError(f"Failed to write report files under {cfg.outdir}: {e}") from e
    written["jsonl"] = str(paths.entities_jsonl)
    written["csv"] = str(paths.entities_csv)
    if cfg.parquet:
        try:
            write_parquet(document.entities, paths.entities_parquet)
            written["parquet"] = str(paths.entities_parquet)
        except ParquetNotAvailable as e:
            LOG.warning(str(e), extra={"step": "export", "phase": "skipped", "artifact": "parquet"})
    return written


def _install_abort_handler(abort: threading.Event) -> Any:
    """
    First Ctrl-C sets the abort event so the pipeline stops at the next
    boundary; a second one interrupts immediately.
    """

    def _handler(signum: int, frame: Any) -> None:
        if abort.is_set():
            raise KeyboardInterrupt
        LOG.warning("Abort requested; stopping at the next boundary", extra={"step": "run", "phase": "aborting"})
        abort.set()

    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGINT, _handler)


def cmd_export(cfg: RunConfig) -> int:
    paths = resolve_output_paths(cfg.outdir)
    paths.root.mkdir(parents=True, exist_ok=True)
    add_run_log_file(paths.debug_log)
    timers = StepTimers()
    log_event(
        LOG,
        logging.INFO,
        "Starting export run",
        step="run",
        phase="start",
        timers=timers,
        outdir=str(cfg.outdir),
        source=cfg.source,
    )
    LOG.debug("Effective configuration", extra={"step": "run", "phase": "config", "config": dump_config(cfg)})

    setup = build_source(cfg)
    selector = build_selector(cfg)
    abort = threading.Event()
    progress = RichProgressObserver(enabled=cfg.progress)
    observers: List[Observer] = [LoggingObserver()]
    if progress.enabled:
        observers.append(progress)
    observer = CompositeObserver(observers)

    failures = FailureCollector(observer=observer)
    cache = ReferenceResolverCache(setup.lookup, failures=failures, observer=observer)
    pipeline = ExportPipeline(
        PagedFetcher(setup.source, abort=abort),
        SchemaNormalizer(cache, failures=failures, observer=observer),
        failures,
        details=setup.details,
        selector=selector,
        observer=observer,
        abort=abort,
        workers_detail=cfg.workers_detail,
        workers_normalize=cfg.workers_normalize,
    )
    metadata = ReportMetadata(
        collected_at=cfg.collected_at,
        tool=TOOL_NAME,
        tool_version=tool_version(),
        source_scope=f"{cfg.source}: " + ", ".join(k.value for k in cfg.collections),
        filter_description=selector.describe() if not selector.selects_all else "",
    )

    previous_handler = _install_abort_handler(abort)
    try:
        with progress:
            document = pipeline.run(setup.requests, metadata)
    except RunAborted:
        log_event(LOG, logging.WARNING, "Export aborted", step="run", phase="aborted", timers=timers)
        render_run_summary_table(enabled=cfg.progress, status="ABORTED", document=None, outdir=str(cfg.outdir))
        raise
    except Exception:
        log_event(LOG, logging.ERROR, "Export failed", step="run", phase="error", timers=timers)
        render_run_summary_table(enabled=cfg.progress, status="FAILED", document=None, outdir=str(cfg.outdir))
        raise
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    written = write_outputs(document, cfg)
    status = "PARTIAL" if document.errors else "OK"
    log_event(
        LOG,
        logging.INFO,
        "Export complete",
        step="run",
        phase="complete",
        timers=timers,
        status=status,
        entities=len(document.entities),
        errors=len(document.errors),
        resolver_lookups=cache.lookup_count,
        resolver_hits=cache.hit_count,
        outputs=written,
        stats=pipeline.stats.as_dict(),
    )
    render_run_summary_table(enabled=cfg.progress, status=status, document=document, outdir=str(cfg.outdir))
    return 0


def cmd_list_collections() -> int:
    for name in SOURCES:
        for kind in SOURCE_KINDS[name]:
            print(f"{name}\t{kind.value}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))

        if command == "export":
            code = cmd_export(cfg)
        elif command == "list-collections":
            code = cmd_list_collections()
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except KeyboardInterrupt as e:
        sys.exit(as_exit_code(e))
    except Exception as e:
        # Map to consistent exit code and log
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e), "error_type": e.__class__.__name__})
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
