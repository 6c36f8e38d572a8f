"""Drive clone, blame, and delivery across every configured repository of a tenant."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger
from pydantic import ValidationError

from blame_attribution.blame import BlameCache, BlameParser, run_git_blame, split_blame_output
from blame_attribution.clone import CloneManager
from blame_attribution.config import Settings
from blame_attribution.delivery import AttributionSink, slice_into_chunks
from blame_attribution.errors import (
    BlameError,
    CloneError,
    CloneStringError,
    DeliveryError,
    RepositoryAbortedError,
    ViolationSourceError,
)
from blame_attribution.line_resolver import resolve_for_resource
from blame_attribution.models import (
    AttributionUpdate,
    RepositoryOutcome,
    RepositoryRef,
    RepositoryState,
    RunSummary,
    ViolationResource,
)
from blame_attribution.store import BlobStore, ViolationSource
from blame_attribution.vcs import VcsAdapter, resolve_clone_strings

T = TypeVar("T")
R = TypeVar("R")


async def bounded_gather(items: Iterable[T], limit: int, worker: Callable[[T], Awaitable[R]]) -> list[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    If one worker raises, the remaining ones are cancelled before re-raising.
    """
    semaphore = asyncio.Semaphore(limit)

    async def run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(run(item)) for item in items]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class FailureGuard:
    """Abort a repository after ``limit`` consecutive unit failures."""

    def __init__(self, repository: str, limit: int):
        self.repository = repository
        self.limit = limit
        self.consecutive = 0

    def record_success(self) -> None:
        self.consecutive = 0

    def record_failure(self) -> None:
        self.consecutive += 1
        if self.consecutive >= self.limit:
            raise RepositoryAbortedError(
                f"{self.consecutive} consecutive blame failures in {self.repository}, aborting repository"
            )


@dataclass
class RepositoryAttribution:
    updates: list[AttributionUpdate] = field(default_factory=list)
    skipped: int = 0
    caches: dict[str, BlameCache] = field(default_factory=dict)


def filter_resources(resources: list[ViolationResource], settings: Settings) -> list[ViolationResource]:
    """Drop resources without a path, under excluded paths, or without any line data."""
    kept: list[ViolationResource] = []
    for resource in resources:
        if not resource.file_path:
            logger.info(f"File path doesn't exist on resource {resource.key} - skipped")
            continue
        if settings.is_excluded_path(resource.file_path):
            logger.info(f"File path {resource.file_path} is excluded - skipped")
            continue
        if not resource.is_attributable:
            logger.info(f"No error lines and metadata lines for resource {resource.key} - skipped")
            continue
        kept.append(resource)
    return kept


def validate_violations(records: Iterable[Any], repo_full_name: str) -> tuple[list[ViolationResource], int]:
    """Validate raw violation payloads one by one, returning the valid ones and the invalid count."""
    resources: list[ViolationResource] = []
    invalid = 0
    for record in records:
        try:
            resources.append(ViolationResource.model_validate(record))
        except ValidationError as exc:
            invalid += 1
            fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
            logger.warning(f"Invalid violation resource for {repo_full_name} ({', '.join(fields)}) - skipped")
    return resources, invalid


def group_by_file(resources: list[ViolationResource]) -> dict[str, list[ViolationResource]]:
    grouped: dict[str, list[ViolationResource]] = {}
    for resource in resources:
        grouped.setdefault(resource.normalized_path, []).append(resource)
    return grouped


class AttributionPipeline:
    """Blame attribution for one tenant and one VCS source type."""

    def __init__(
        self,
        *,
        adapter: VcsAdapter,
        violation_source: ViolationSource,
        blob_store: BlobStore,
        sink: AttributionSink,
        clone_manager: CloneManager,
        settings: Settings | None = None,
        raise_on_delivery_error: bool = False,
    ):
        self.adapter = adapter
        self.violation_source = violation_source
        self.blob_store = blob_store
        self.sink = sink
        self.clone_manager = clone_manager
        self.settings = settings or Settings()
        self.raise_on_delivery_error = raise_on_delivery_error
        self.last_summary: RunSummary | None = None

    async def run(self, tenant: str, source_type: str, repositories: list[RepositoryRef]) -> RunSummary:
        """Process every repository and return a summary.

        The summary is also kept on ``last_summary``, including for aborted runs.

        Raises:
            CloneStringError: A clone string could not be resolved; nothing is cloned.
        """
        summary = RunSummary(tenant=tenant, source_type=str(source_type))
        self.last_summary = summary
        logger.info(
            f"Fetching git blame for tenant={tenant} source_type={source_type} "
            f"repositories={[repository.full_name for repository in repositories]}"
        )

        to_resolve = [r for r in repositories if not self.settings.is_blacklisted(r.full_name)]
        try:
            clone_strings = await asyncio.to_thread(resolve_clone_strings, self.adapter, tenant, to_resolve)
        except CloneStringError as exc:
            summary.aborted = True
            summary.error = str(exc)
            summary.finished_at = datetime.now(timezone.utc)
            logger.error(f"Git blame run aborted for {tenant}: {exc}")
            raise

        for repository in repositories:
            outcome = await self.process_repository(tenant, repository, clone_strings.get(repository.full_name))
            summary.outcomes.append(outcome)

        summary.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Git blame run finished for {tenant}: attributed={summary.attributed} skipped={summary.skipped} "
            f"failed={summary.repositories_in(RepositoryState.FAILED)}"
        )
        return summary

    async def process_repository(
        self,
        tenant: str,
        repository: RepositoryRef,
        clone_url: str | None,
    ) -> RepositoryOutcome:
        outcome = RepositoryOutcome(repository=repository.full_name)
        if self.settings.is_blacklisted(repository.full_name):
            logger.info(f"Repo {repository.full_name} is on the blacklist - skipped")
            outcome.state = RepositoryState.SKIPPED
            return outcome
        if not clone_url:
            outcome.state = RepositoryState.FAILED
            outcome.error = f"No clone string resolved for {repository.full_name}"
            return outcome

        try:
            violations, invalid = await self.load_violations(tenant, repository)
        except ViolationSourceError as exc:
            logger.error(f"Fetching violations failed for {tenant} {repository.full_name}: {exc}")
            outcome.state = RepositoryState.FAILED
            outcome.error = str(exc)
            return outcome

        resources = filter_resources(violations, self.settings)
        outcome.skipped = invalid + len(violations) - len(resources)
        logger.info(f"{repository.full_name}: {len(violations)} violation resources, {len(resources)} after filter")
        if not resources:
            outcome.state = RepositoryState.DONE
            return outcome

        grouped = group_by_file(resources)
        try:
            outcome.state = RepositoryState.CLONING
            async with self.clone_manager.session(tenant, repository, clone_url, mode="bare") as cloned:
                outcome.clone_size_mb = cloned.size_on_disk_mb
                outcome.state = RepositoryState.BLAMING
                result = await self.attribute_repository(tenant, repository.full_name, cloned.path, grouped)

            outcome.attributed = len(result.updates)
            outcome.skipped += result.skipped
            outcome.state = RepositoryState.EMITTING
            await self.deliver(tenant, repository, result.updates, outcome)
        except (CloneError, RepositoryAbortedError) as exc:
            logger.error(f"Git blame failed for {tenant} {repository.full_name}: {exc}")
            outcome.state = RepositoryState.FAILED
            outcome.error = str(exc)
            return outcome
        except DeliveryError as exc:
            logger.error(f"Delivering attributions failed for {tenant} {repository.full_name}: {exc}")
            outcome.state = RepositoryState.FAILED
            outcome.error = str(exc)
            if self.raise_on_delivery_error:
                raise
            return outcome

        outcome.state = RepositoryState.DONE
        return outcome

    async def load_violations(self, tenant: str, repository: RepositoryRef) -> tuple[list[ViolationResource], int]:
        """Fetch pending violations, reading them from the blob store when they were staged.

        Returns the valid resources and the number of records that failed validation.

        Raises:
            ViolationSourceError: The violation source or blob store failed, or
                the staged payload is not a list of records.
        """
        try:
            pending = await asyncio.to_thread(
                self.violation_source.get_pending_attributions, tenant, repository.full_name
            )
            if not pending.staged_key:
                return validate_violations(pending.violations or [], repository.full_name)
            payload = await asyncio.to_thread(self.blob_store.get_object, pending.staged_key)
        except Exception as exc:
            raise ViolationSourceError(f"Failed to fetch pending violations for {repository.full_name}: {exc}") from exc

        if payload is None:
            logger.warning(f"Staged violations {pending.staged_key} for {repository.full_name} not found")
            return [], 0
        if isinstance(payload, dict):
            payload = payload.get("violationResources", payload.get("violations")) or []
        if not isinstance(payload, list):
            raise ViolationSourceError(
                f"Staged violations {pending.staged_key} for {repository.full_name} are not a list of records"
            )
        return validate_violations(payload, repository.full_name)

    async def attribute_repository(
        self,
        tenant: str,
        repo_full_name: str,
        repo_path: Path,
        grouped: dict[str, list[ViolationResource]],
    ) -> RepositoryAttribution:
        """Blame every file once and attribute every resource of that file.

        Raises:
            RepositoryAbortedError: Too many consecutive unit failures.
        """
        result = RepositoryAttribution()
        guard = FailureGuard(repo_full_name, self.settings.max_consecutive_failures)

        async def process_file(file_path: str) -> None:
            resources = grouped[file_path]
            try:
                output = await run_git_blame(repo_path, file_path)
            except BlameError as exc:
                logger.warning(f"[{tenant}] {exc.kind.value} for {file_path} - skipped {len(resources)} resources")
                result.skipped += len(resources)
                guard.record_failure()
                return

            cache = result.caches.setdefault(file_path, BlameCache())
            parser = BlameParser(split_blame_output(output), file_path, tenant, cache)

            async def process_resource(resource: ViolationResource) -> None:
                selection = resolve_for_resource(resource)
                if selection is None:
                    logger.debug(f"[{tenant}] no error line of {resource.key} falls in {resource.line_range}")
                    result.skipped += 1
                    return
                try:
                    attribution = parser.attribute(selection)
                except BlameError as exc:
                    logger.warning(
                        f"[{tenant}] {exc.kind.value} for {file_path} lines "
                        f"{selection.start_line}-{selection.end_line}: {exc}"
                    )
                    result.skipped += 1
                    guard.record_failure()
                    return

                guard.record_success()
                if attribution is None:
                    result.skipped += 1
                    return
                result.updates.append(
                    AttributionUpdate(
                        tenant=tenant,
                        resource_key=resource.key,
                        attribution=attribution,
                        git_blame_metadata_id=resource.git_blame_metadata_id,
                    )
                )

            await bounded_gather(resources, self.settings.max_concurrent_resources, process_resource)

        await bounded_gather(list(grouped), self.settings.max_concurrent_files, process_file)
        logger.info(
            f"Finished blame for {tenant} {repo_full_name}: {len(result.updates)} attributed, {result.skipped} skipped"
        )
        return result

    async def deliver(
        self,
        tenant: str,
        repository: RepositoryRef,
        updates: list[AttributionUpdate],
        outcome: RepositoryOutcome,
    ) -> None:
        """Hand updates to the sink chunk by chunk; delivered chunks stay delivered."""
        chunks = slice_into_chunks(updates, self.settings.chunk_size)
        logger.info(
            f"Writing {len(updates)} attribution updates for {repository.full_name} "
            f"in {len(chunks)} chunks of {self.settings.chunk_size}"
        )
        for chunk in chunks:
            try:
                report_key = await asyncio.to_thread(
                    self.sink.submit_attribution_batch, tenant, repository.full_name, chunk
                )
            except Exception as exc:
                raise DeliveryError(
                    f"Failed to deliver chunk {outcome.chunks_delivered + 1}/{len(chunks)} "
                    f"for {repository.full_name}: {exc}"
                ) from exc
            outcome.chunks_delivered += 1
            outcome.report_keys.append(report_key)
