from __future__ import annotations

import io

from rich.console import Console

from policy_inventory.normalize.schema import (
    CanonicalEntity,
    EntityType,
    FailureRecord,
    ReportDocument,
    ReportMetadata,
    SourceKind,
)
from policy_inventory.pipeline.events import OUTCOME_COMPLETE, OUTCOME_FAILED, OUTCOME_OK, OUTCOME_START, PipelineEvent
from policy_inventory.util.rich_progress import RichProgressObserver, render_run_summary_table


def _console() -> Console:
    return Console(file=io.StringIO(), width=120, force_terminal=False)


def test_summary_table_lists_counts() -> None:
    console = _console()
    document = ReportDocument(
        metadata=ReportMetadata(collected_at="now", tool="policy-inv", source_scope="gpo: gpo.report", filter_description="base*"),
        entities=(
            CanonicalEntity(id="1", display_name="Baseline", entity_type=EntityType.GROUP_POLICY_OBJECT, source_kind=SourceKind.GPO_REPORT),
        ),
        errors=(FailureRecord(stage="paging", item_identifier="gpo.report:*.xml", message="bad xml"),),
    )

    render_run_summary_table(enabled=True, status="PARTIAL", document=document, outdir="out/x", console=console)

    text = console.file.getvalue()
    assert "PARTIAL" in text
    assert "Group Policy Object=1" in text
    assert "paging=1" in text
    assert "base*" in text


def test_summary_table_disabled_prints_nothing() -> None:
    console = _console()

    render_run_summary_table(enabled=False, status="OK", document=None, outdir="out", console=console)

    assert console.file.getvalue() == ""


def test_progress_observer_tracks_stage_failures() -> None:
    observer = RichProgressObserver(enabled=True, console=_console())

    with observer:
        observer.on_event(PipelineEvent(stage="detail", item="", outcome=OUTCOME_START, count=2))
        observer.on_event(PipelineEvent(stage="detail", item="a", outcome=OUTCOME_OK))
        observer.on_event(PipelineEvent(stage="detail", item="b", outcome=OUTCOME_FAILED, detail="404"))
        observer.on_event(PipelineEvent(stage="resolution", item="group:x", outcome=OUTCOME_FAILED))
        observer.on_event(PipelineEvent(stage="detail", item="", outcome=OUTCOME_COMPLETE, count=2))

    assert observer._failures == {"detail": 1}


def test_disabled_observer_ignores_events() -> None:
    observer = RichProgressObserver(enabled=False)

    with observer:
        observer.on_event(PipelineEvent(stage="fetch", item="", outcome=OUTCOME_START))

    assert not observer.enabled
