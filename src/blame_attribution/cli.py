"""Typer-based CLI for blame attribution and repository statistics runs."""

from __future__ import annotations

import asyncio
import json
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path

import typer
from loguru import logger

from blame_attribution.clone import CloneManager
from blame_attribution.config import DEFAULT_DB_PATH, Settings
from blame_attribution.delivery import BlobStagingSink
from blame_attribution.errors import CloneError, CloneStringError, UnsupportedSourceTypeError
from blame_attribution.logging_setup import configure_logging
from blame_attribution.models import RepositoryRef, RepositoryState
from blame_attribution.pipeline import AttributionPipeline
from blame_attribution.report import render_run_summary
from blame_attribution.snapshot import upload_repository_snapshots
from blame_attribution.statistics import collect_repository_statistics
from blame_attribution.store import Store
from blame_attribution.vcs import JsonFileVcsAdapter, SourceType, select_adapter

app = typer.Typer(add_completion=False, help="git-blame-attribution: attribute violations to the commits that introduced them")

EXIT_REPOSITORY_FAILED = 1
EXIT_RUN_ABORTED = 2


def _echo_step(step: int, total: int, message: str) -> None:
    """Print a normalized progress step line."""
    typer.echo(f"[{step}/{total}] {message}")


def parse_repository(value: str) -> RepositoryRef:
    """Parse ``owner/name`` or ``owner/name@branch``."""
    full_name, _, branch = value.partition("@")
    owner, _, name = full_name.strip().partition("/")
    if not owner or not name:
        raise typer.BadParameter(f"Repository must look like owner/name[@branch]: {value}")
    return RepositoryRef(owner=owner, name=name, branch=branch or None)


def _adapters(clone_strings: Path) -> dict[SourceType, JsonFileVcsAdapter]:
    adapter = JsonFileVcsAdapter(clone_strings)
    return {source_type: adapter for source_type in SourceType}


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Log level for stderr and file sinks"),
    log_file: Path | None = typer.Option(None, "--log-file", help="Optional rotating log file"),
) -> None:
    configure_logging(level=log_level, log_file=log_file)


@app.command("init-db")
def init_db(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Initialize the SQLite staging schema."""
    store = Store(db_path)
    store.init_db()
    typer.echo(f"DB initialized: {db_path}")


@app.command("load-violations")
def load_violations(
    tenant: str = typer.Argument(..., help="Tenant (customer) name"),
    repository: str = typer.Argument(..., help="Full repository name, owner/name"),
    violations_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON list of violation resources"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    staged: bool = typer.Option(False, "--staged", help="Stage the payload as a blob and store only its key"),
) -> None:
    """Register pending violation resources for a repository."""
    payload = json.loads(violations_file.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("violationResources", payload.get("violations"))
    if not isinstance(payload, list):
        raise typer.BadParameter("Violations file must contain a JSON list of violation resources")

    store = Store(db_path)
    store.init_db()
    if staged:
        key = f"pending-violations/{tenant}/{repository}/{uuid.uuid4()}"
        store.put_object(key, {"violationResources": payload})
        store.set_pending_attributions(tenant, repository, staged_key=key)
        typer.echo(f"Staged {len(payload)} violation resources for {repository} at {key}")
    else:
        store.set_pending_attributions(tenant, repository, violations=payload)
        typer.echo(f"Loaded {len(payload)} violation resources for {repository}")


@app.command("blame")
def blame(
    tenant: str = typer.Argument(..., help="Tenant (customer) name"),
    source_type: str = typer.Argument(..., help="VCS source type, e.g. github or bitbucket_enterprise"),
    repositories: list[str] = typer.Argument(..., help="Repositories as owner/name[@branch]"),
    clone_strings: Path = typer.Option(..., "--clone-strings", exists=True, dir_okay=False, help="JSON map of owner/name to clone URL"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    clones_root: Path | None = typer.Option(None, "--clones-root", help="Directory for temporary clones"),
    chunk_size: int | None = typer.Option(None, "--chunk-size", min=1, help="Attribution updates per staged chunk"),
    max_files: int | None = typer.Option(None, "--max-files", min=1, help="Files blamed concurrently"),
    max_resources: int | None = typer.Option(None, "--max-resources", min=1, help="Resources parsed concurrently per file"),
    report_dir: Path | None = typer.Option(None, "--report-dir", help="Write a Markdown/JSON run summary here"),
) -> None:
    """Attribute pending violations of each repository to their last commit."""
    settings = Settings.from_env(
        clones_root=clones_root,
        chunk_size=chunk_size,
        max_concurrent_files=max_files,
        max_concurrent_resources=max_resources,
    )
    refs = [parse_repository(value) for value in repositories]

    _echo_step(1, 3, "Preparing storage and VCS adapter")
    store = Store(db_path)
    store.init_db()
    store.purge_expired()
    try:
        adapter = select_adapter(source_type, _adapters(clone_strings))
    except UnsupportedSourceTypeError as exc:
        raise typer.BadParameter(str(exc)) from exc

    pipeline = AttributionPipeline(
        adapter=adapter,
        violation_source=store,
        blob_store=store,
        sink=BlobStagingSink(store, expires_in_days=settings.staging_expiration_days),
        clone_manager=CloneManager(settings.clones_root),
        settings=settings,
    )

    _echo_step(2, 3, f"Running git blame for {len(refs)} repositories")
    try:
        summary = asyncio.run(pipeline.run(tenant, source_type, refs))
    except CloneStringError as exc:
        typer.echo(f"Run aborted: {exc}", err=True)
        if report_dir is not None and pipeline.last_summary is not None:
            out_dir = render_run_summary(pipeline.last_summary, report_dir)
            typer.echo(f"Report written to: {out_dir}")
        raise typer.Exit(code=EXIT_RUN_ABORTED) from exc

    _echo_step(3, 3, "Summarizing")
    for outcome in summary.outcomes:
        detail = f" error={outcome.error}" if outcome.error else ""
        typer.echo(
            f"    {outcome.repository}: {outcome.state.value} attributed={outcome.attributed} "
            f"skipped={outcome.skipped} chunks={outcome.chunks_delivered}{detail}"
        )
    if report_dir is not None:
        out_dir = render_run_summary(summary, report_dir)
        typer.echo(f"Report written to: {out_dir}")
    typer.echo(f"Run complete. attributed={summary.attributed} skipped={summary.skipped}")

    if summary.repositories_in(RepositoryState.FAILED):
        raise typer.Exit(code=EXIT_REPOSITORY_FAILED)


@app.command("stats")
def stats(
    tenant: str = typer.Argument(..., help="Tenant (customer) name"),
    repositories: list[str] = typer.Argument(..., help="Repositories as owner/name[@branch]"),
    clone_strings: Path = typer.Option(..., "--clone-strings", exists=True, dir_okay=False, help="JSON map of owner/name to clone URL"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    clones_root: Path | None = typer.Option(None, "--clones-root", help="Directory for temporary clones"),
    source: str = typer.Option("", "--source", help="Source label stored with clone results"),
    execution_time: str | None = typer.Option(None, "--execution-time", help="Execution identifier, defaults to now"),
    shallow: bool = typer.Option(False, "--shallow", help="Clone only the requested branch at depth 1"),
) -> None:
    """Clone repositories, record clone results, and save commit-log statistics."""
    settings = Settings.from_env(clones_root=clones_root)
    execution_time = execution_time or datetime.now(timezone.utc).isoformat()
    store = Store(db_path)
    store.init_db()
    adapter = JsonFileVcsAdapter(clone_strings)
    clone_manager = CloneManager(settings.clones_root)

    async def collect_all():
        return [
            await collect_repository_statistics(
                tenant,
                parse_repository(value),
                adapter=adapter,
                clone_manager=clone_manager,
                reporter=store,
                settings=settings,
                mode="shallow" if shallow else "full",
            )
            for value in repositories
        ]

    results = asyncio.run(collect_all())
    store.write_clone_results(tenant, execution_time, results, source=source)
    for result in results:
        if result.ok:
            typer.echo(f"    {result.repository_name}: size={result.clone_size:.2f}MB duration={result.clone_duration:.0f}ms")
        else:
            typer.echo(f"    {result.repository_name}: failed ({result.error})")
    typer.echo(f"Stats complete. execution_time={execution_time}")


@app.command("snapshot")
def snapshot(
    tenant: str = typer.Argument(..., help="Tenant (customer) name"),
    source_type: str = typer.Argument(..., help="VCS source type, e.g. github or bitbucket_enterprise"),
    repositories: list[str] = typer.Argument(..., help="Repositories as owner/name[@branch]"),
    clone_strings: Path = typer.Option(..., "--clone-strings", exists=True, dir_okay=False, help="JSON map of owner/name to clone URL"),
    prefix: str = typer.Option(..., "--prefix", help="Key prefix the working trees are uploaded under"),
    commit: str | None = typer.Option(None, "--commit", help="Commit to check out when the branch is gone"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    clones_root: Path | None = typer.Option(None, "--clones-root", help="Directory for temporary clones"),
) -> None:
    """Upload repository working trees for scanning and print their scan paths as JSON."""
    settings = Settings.from_env(clones_root=clones_root)
    refs = [parse_repository(value) for value in repositories]
    store = Store(db_path)
    store.init_db()
    try:
        adapter = select_adapter(source_type, _adapters(clone_strings))
    except UnsupportedSourceTypeError as exc:
        raise typer.BadParameter(str(exc)) from exc

    try:
        scan_paths = asyncio.run(
            upload_repository_snapshots(
                tenant,
                refs,
                prefix.rstrip("/"),
                adapter=adapter,
                clone_manager=CloneManager(settings.clones_root),
                uploader=store,
                commit=commit,
                settings=settings,
            )
        )
    except CloneStringError as exc:
        typer.echo(f"Run aborted: {exc}", err=True)
        raise typer.Exit(code=EXIT_RUN_ABORTED) from exc
    except CloneError as exc:
        logger.error(f"Snapshot upload failed for {tenant}: {exc}")
        typer.echo(f"Snapshot failed: {exc}", err=True)
        raise typer.Exit(code=EXIT_REPOSITORY_FAILED) from exc

    typer.echo(json.dumps([scan_path.model_dump(by_alias=True) for scan_path in scan_paths], indent=2))


@app.command("clone-errors")
def clone_errors(
    tenant: str = typer.Argument(..., help="Tenant (customer) name"),
    execution_time: str = typer.Argument(..., help="Execution identifier used by the stats run"),
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    source: str | None = typer.Option(None, "--source", help="Filter by source label"),
) -> None:
    """Print failed clones recorded for an execution as JSON."""
    store = Store(db_path)
    store.init_db()
    failed = store.get_clone_errors(tenant, execution_time, source=source)
    typer.echo(json.dumps({"failedRepositories": failed, "failedRepositoriesCount": len(failed)}, indent=2))


@app.command("doctor")
def doctor(
    db_path: Path = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
) -> None:
    """Print local environment diagnostics used by the CLI."""
    settings = Settings.from_env()
    typer.echo(f"git executable: {shutil.which('git') or 'not found'}")
    typer.echo(f"DB exists: {db_path.exists()} ({db_path})")
    typer.echo(f"Clones root: {settings.clones_root}")
    typer.echo(f"Chunk size: {settings.chunk_size}")


if __name__ == "__main__":
    app()
