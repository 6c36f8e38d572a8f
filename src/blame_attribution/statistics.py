"""Clone a repository, record clone metrics, and collect commit-log statistics."""

from __future__ import annotations

import asyncio
import time

from loguru import logger

from blame_attribution.clone import CloneManager, CloneMode
from blame_attribution.config import Settings
from blame_attribution.errors import CloneError, CloneStringError, GitCommandError
from blame_attribution.git_log import repository_activity
from blame_attribution.models import CloneResult, RepositoryRef
from blame_attribution.store import StatisticsReporter
from blame_attribution.vcs import VcsAdapter, resolve_clone_strings


async def collect_repository_statistics(
    tenant: str,
    repository: RepositoryRef,
    *,
    adapter: VcsAdapter,
    clone_manager: CloneManager,
    reporter: StatisticsReporter | None = None,
    settings: Settings | None = None,
    mode: CloneMode = "full",
    consider_blacklist: bool = True,
) -> CloneResult:
    """Clone ``repository`` and report its contributors and weekly commit counts.

    Clone-string and clone failures are returned as a failure record instead
    of being raised. ``failure_time`` is the elapsed milliseconds until the
    failure.
    """
    settings = settings or Settings()
    result = CloneResult(repository_name=repository.full_name, repository_id=repository.repository_id)

    if consider_blacklist and settings.is_blacklisted(repository.full_name):
        logger.info(f"Repo {repository.full_name} is on the blacklist - skipped")
        return result.model_copy(update={"failure_time": 0.0, "error": "repository is on the blacklist"})

    started = time.perf_counter()
    try:
        clone_strings = await asyncio.to_thread(resolve_clone_strings, adapter, tenant, [repository])
        async with clone_manager.session(tenant, repository, clone_strings[repository.full_name], mode=mode) as cloned:
            activity = await repository_activity(cloned.path, since=settings.git_log_since)
            if reporter is not None:
                await asyncio.to_thread(
                    reporter.save_repository_activity,
                    repository.repository_id or repository.full_name,
                    activity,
                )
            logger.info(
                f"clone status: SUCCESS [tenant: {tenant}] [repository: {repository.full_name}] "
                f"contributors={len(activity.contributors_data)} current_week={activity.current_week_commits} "
                f"prev_week={activity.prev_week_commits}"
            )
            return result.model_copy(
                update={"clone_size": cloned.size_on_disk_mb, "clone_duration": cloned.clone_duration_ms}
            )
    except CloneStringError as exc:
        logger.info(f"clone status: SKIPPED [tenant: {tenant}] [repository: {repository.full_name}] [reason: {exc}]")
        error = exc
    except (CloneError, GitCommandError) as exc:
        logger.error(f"clone status: FAILED [tenant: {tenant}] [repository: {repository.full_name}] [reason: {exc}]")
        error = exc

    return result.model_copy(update={"failure_time": (time.perf_counter() - started) * 1000, "error": str(error)})
