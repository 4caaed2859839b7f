from __future__ import annotations

import csv
import json
import logging
from pathlib import Path

import pytest

from policy_inventory import cli
from policy_inventory.config import RunConfig
from policy_inventory.normalize.schema import SourceKind
from policy_inventory.resolve.cache import IdKind
from policy_inventory.util.errors import ConfigError, ExitCode

GPO_TEMPLATE = """<GPO xmlns="http://www.microsoft.com/GroupPolicy/Settings">
  <Identifier><Identifier>{{{guid}}}</Identifier></Identifier>
  <Name>{name}</Name>
  <LinksTo><SOMName>{ou}</SOMName><SOMPath>contoso.com/{ou}</SOMPath><Enabled>true</Enabled></LinksTo>
</GPO>"""


@pytest.fixture(autouse=True)
def _drop_run_log_handlers():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()


def _write_reports(root: Path) -> Path:
    reports = root / "reports"
    reports.mkdir()
    (reports / "1.xml").write_text(
        GPO_TEMPLATE.format(guid="22222222-2222-2222-2222-222222222222", name="Servers", ou="Servers"), encoding="utf-8"
    )
    (reports / "2.xml").write_text(
        GPO_TEMPLATE.format(guid="11111111-1111-1111-1111-111111111111", name="Baseline", ou="Workstations"),
        encoding="utf-8",
    )
    (reports / "3.xml").write_text("<GPO><Name>broken</GPO>", encoding="utf-8")
    return reports


def test_cmd_export_writes_report_for_gpo_reports(tmp_path: Path) -> None:
    reports = _write_reports(tmp_path)
    outdir = tmp_path / "out"
    cfg = RunConfig(
        outdir=outdir,
        source="gpo",
        input_path=reports,
        collections=(SourceKind.GPO_REPORT,),
        progress=False,
        workers_detail=2,
        workers_normalize=2,
    )

    assert cli.cmd_export(cfg) == 0

    index = json.loads((outdir / "index.json").read_text(encoding="utf-8"))
    assert [e["displayName"] for e in index["entities"]] == ["Baseline", "Servers"]
    assert index["metadata"]["tool"] == "policy-inv"
    assert index["metadata"]["sourceScope"] == "gpo: gpo.report"
    # the broken third file fails after two pages were fetched
    assert [e["stage"] for e in index["errors"]] == ["paging"]
    with (outdir / "entities.csv").open(encoding="utf-8", newline="") as f:
        rows = list(csv.DictReader(f))
    assert [r["assignmentCount"] for r in rows] == ["1", "1"]
    assert (outdir / "entities.jsonl").read_text(encoding="utf-8").count("\n") == 2
    assert (outdir / "logs" / "debug.log").is_file()
    assert not (outdir / "entities.parquet").exists()


def test_cmd_export_applies_name_selection(tmp_path: Path) -> None:
    reports = _write_reports(tmp_path)
    (reports / "3.xml").unlink()
    outdir = tmp_path / "out"
    cfg = RunConfig(
        outdir=outdir,
        source="gpo",
        input_path=reports,
        collections=(SourceKind.GPO_REPORT,),
        names=["serv*"],
        progress=False,
    )

    cli.cmd_export(cfg)

    index = json.loads((outdir / "index.json").read_text(encoding="utf-8"))
    assert [e["displayName"] for e in index["entities"]] == ["Servers"]
    assert index["metadata"]["filterDescription"] == "serv*"
    assert index["errors"] == []


def test_json_source_needs_matching_files(tmp_path: Path) -> None:
    cfg = RunConfig(outdir=tmp_path / "out", source="json", input_path=tmp_path, progress=False)

    with pytest.raises(ConfigError):
        cli.build_source(cfg)


def test_json_source_single_file_and_missing_input(tmp_path: Path) -> None:
    export = tmp_path / "apps.json"
    export.write_text(json.dumps({"value": []}), encoding="utf-8")
    cfg = RunConfig(
        outdir=tmp_path / "out",
        source="json",
        input_path=export,
        collections=(SourceKind.GRAPH_MOBILE_APP,),
        progress=False,
    )

    setup = cli.build_source(cfg)

    assert [(r.source_kind, r.endpoint) for r in setup.requests] == [(SourceKind.GRAPH_MOBILE_APP, "apps.json")]
    with pytest.raises(ConfigError, match="Input not found"):
        cli.build_source(RunConfig(outdir=tmp_path, source="json", input_path=None, progress=False))


def test_graph_source_requires_token(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="POLICY_INV_GRAPH_TOKEN"):
        cli.build_source(RunConfig(outdir=tmp_path, source="graph"))


def test_load_lookup_index(tmp_path: Path) -> None:
    reports = _write_reports(tmp_path)
    (reports / "3.xml").unlink()
    index_path = tmp_path / "lookup.yaml"
    index_path.write_text("group:\n  g-1: Pilot\nscopeTag:\n  7: Europe\ngpo: reports\n", encoding="utf-8")

    index = cli.load_lookup_index(index_path)

    assert index[IdKind.GROUP] == {"g-1": "Pilot"}
    assert index[IdKind.SCOPE_TAG] == {"7": "Europe"}
    assert index[IdKind.GPO]["11111111-1111-1111-1111-111111111111"] == "Baseline"


def test_load_lookup_index_rejects_unknown_kind(tmp_path: Path) -> None:
    index_path = tmp_path / "lookup.yaml"
    index_path.write_text("printer:\n  p-1: Floor 2\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        cli.load_lookup_index(index_path)
    assert cli.load_lookup_index(None) == {}


def test_main_list_collections(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["list-collections"])

    assert excinfo.value.code == 0
    lines = capsys.readouterr().out.splitlines()
    assert "rsop\trsop.user" in lines
    assert "graph\tgraph.mobileApp" in lines


def test_main_maps_config_errors_to_exit_code(monkeypatch) -> None:
    monkeypatch.delenv("POLICY_INV_INPUT", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["export", "--source", "rsop"])

    assert excinfo.value.code == int(ExitCode.CONFIG_ERROR)
