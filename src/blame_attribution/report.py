"""Render a pipeline run summary into Markdown and JSON files."""

from __future__ import annotations

import json
from pathlib import Path

from blame_attribution.models import RepositoryState, RunSummary


def render_run_summary(summary: RunSummary, output_root: Path) -> Path:
    """Write ``summary.md`` and ``summary.json`` and return their directory.

    Args:
        summary: Result of one pipeline invocation.
        output_root: Root directory where per-run folders are created.

    Returns:
        The run-specific directory containing rendered files.
    """
    run_id = f"{summary.tenant}-{summary.started_at.strftime('%Y%m%dT%H%M%S')}"
    target_dir = output_root / run_id
    target_dir.mkdir(parents=True, exist_ok=True)

    (target_dir / "summary.md").write_text(_render_markdown(summary), encoding="utf-8")

    json_payload = summary.model_dump(mode="json")
    json_payload["attributed"] = summary.attributed
    json_payload["skipped"] = summary.skipped
    json_payload["succeeded"] = summary.succeeded
    (target_dir / "summary.json").write_text(json.dumps(json_payload, indent=2, ensure_ascii=False), encoding="utf-8")

    return target_dir


def _render_markdown(summary: RunSummary) -> str:
    status = "aborted" if summary.aborted else ("succeeded" if summary.succeeded else "completed with failures")
    lines = [
        f"# Git blame run for {summary.tenant}",
        "",
        f"- Source type: `{summary.source_type}`",
        f"- Started: `{summary.started_at.isoformat()}`",
        f"- Finished: `{summary.finished_at.isoformat() if summary.finished_at else '-'}`",
        f"- Status: **{status}**",
        f"- Attributed resources: `{summary.attributed}`",
        f"- Skipped resources: `{summary.skipped}`",
        "",
    ]
    if summary.error:
        lines.extend([f"> {summary.error}", ""])

    lines.extend(
        [
            "## Repositories",
            "",
            "| Repository | State | Attributed | Skipped | Chunks | Error |",
            "| --- | --- | ---: | ---: | ---: | --- |",
        ]
    )
    for outcome in summary.outcomes:
        lines.append(
            f"| {outcome.repository} | {outcome.state.value} | {outcome.attributed} | {outcome.skipped} "
            f"| {outcome.chunks_delivered} | {_escape_cell(outcome.error or '')} |"
        )

    for state in (RepositoryState.SKIPPED, RepositoryState.FAILED):
        names = summary.repositories_in(state)
        if names:
            lines.extend(["", f"## {state.value.capitalize()}", ""])
            lines.extend(f"- `{name}`" for name in names)

    lines.append("")
    return "\n".join(lines)


def _escape_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")
