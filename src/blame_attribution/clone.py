"""Clone lifecycle: resolve the target directory, clone, measure, and always clean up."""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal

from loguru import logger

from blame_attribution.config import BRANCH_NOT_FOUND_MESSAGE
from blame_attribution.errors import BranchNotFoundError, CloneError, CloneStringError, GitCommandError
from blame_attribution.git import redact_clone_url, run_cmd
from blame_attribution.models import ClonedRepository, RepositoryRef

CloneMode = Literal["bare", "shallow", "full"]

BYTES_PER_MB = 1024 * 1024


def looks_like_git_url(source: str) -> bool:
    """Return ``True`` when ``source`` matches common git URL prefixes."""
    return (
        source.startswith("https://")
        or source.startswith("http://")
        or source.startswith("git@")
        or source.startswith("ssh://")
        or source.startswith("file://")
    )


def validate_clone_source(source: str | None) -> str:
    """Accept remote git URLs and existing local directories as clone sources."""
    if not source or not source.strip():
        raise CloneStringError("Clone string is empty")
    source = source.strip()
    if looks_like_git_url(source) or Path(source).expanduser().is_dir():
        return source
    raise CloneStringError(
        f"Clone string is neither a recognized git URL nor a local directory: {redact_clone_url(source)}"
    )


def fork_clone_url(clone_url: str, full_repo_name: str, full_forked_repo_name: str | None) -> str:
    """Point ``clone_url`` at the fork when the repository is a forked branch."""
    if not full_forked_repo_name or full_repo_name not in clone_url:
        return clone_url
    return clone_url.replace(full_repo_name, full_forked_repo_name, 1)


def directory_size_bytes(path: Path) -> int:
    """Sum file sizes under ``path`` from ``stat`` data only; symlinks are not followed."""
    total = 0
    stack = [path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(Path(entry.path))
                    elif entry.is_file(follow_symlinks=False):
                        total += entry.stat(follow_symlinks=False).st_size
        except FileNotFoundError:
            continue
    return total


def directory_size_mb(path: Path) -> float:
    return directory_size_bytes(path) / BYTES_PER_MB


class CloneManager:
    """Owns the clone directories of one pipeline instance.

    Directories are keyed by tenant and full repository name, so concurrent
    instances for different tenants never share a path.
    """

    def __init__(self, clones_root: Path):
        self.clones_root = Path(clones_root)

    def clone_path(self, tenant: str, repository: RepositoryRef) -> Path:
        return self.clones_root / tenant / repository.owner / repository.name

    def remove(self, path: Path) -> None:
        if path.exists() or path.is_symlink():
            logger.debug(f"Removing clone directory {path}")
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path, ignore_errors=True)
            else:
                path.unlink(missing_ok=True)
        if path.exists():
            raise CloneError(f"Failed to remove clone directory {path}")

    def clone(
        self,
        clone_url: str,
        target: Path,
        mode: CloneMode = "bare",
        branch: str | None = None,
        commit: str | None = None,
    ) -> ClonedRepository:
        """Clone ``clone_url`` into ``target`` and measure the result.

        Raises:
            BranchNotFoundError: The branch is missing and no commit fallback was given.
            CloneError: Any other git failure.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning {redact_clone_url(clone_url)} into {target} ({mode})")
        started = time.perf_counter()

        try:
            if mode == "bare":
                run_cmd(["git", "clone", "--quiet", "--bare", clone_url, str(target)])
            elif mode == "shallow":
                self._clone_single_branch(clone_url, target, branch, commit)
            else:
                run_cmd(["git", "clone", "--quiet", clone_url, str(target)])
                if commit:
                    run_cmd(["git", "-C", str(target), "checkout", "--quiet", commit])
        except GitCommandError as exc:
            raise CloneError(f"Failed to clone into {target}: {exc.stderr}") from exc

        duration_ms = (time.perf_counter() - started) * 1000
        size_mb = directory_size_mb(target)
        logger.info(f"Cloned {target} in {duration_ms:.0f}ms, size {size_mb:.2f}MB")
        return ClonedRepository(
            path=target,
            is_bare=mode == "bare",
            size_on_disk_mb=size_mb,
            clone_duration_ms=duration_ms,
        )

    def _clone_single_branch(self, clone_url: str, target: Path, branch: str | None, commit: str | None) -> None:
        cmd = ["git", "clone", "--quiet", "--depth", "1"]
        if branch:
            cmd.extend(["--single-branch", "--branch", branch])
        try:
            run_cmd([*cmd, clone_url, str(target)])
        except GitCommandError as exc:
            if BRANCH_NOT_FOUND_MESSAGE not in exc.stderr:
                raise
            if not commit:
                raise BranchNotFoundError(f"Remote branch {branch!r} not found for {target}") from exc
            logger.warning(f"Remote branch {branch!r} not found, cloning full repository and checking out {commit}")
            self.remove(target)
            run_cmd(["git", "clone", "--quiet", clone_url, str(target)])
            run_cmd(["git", "-C", str(target), "checkout", "--quiet", commit])

    @asynccontextmanager
    async def session(
        self,
        tenant: str,
        repository: RepositoryRef,
        clone_url: str,
        mode: CloneMode = "bare",
        commit: str | None = None,
    ) -> AsyncIterator[ClonedRepository]:
        """Clone for the duration of the ``async with`` block.

        The target directory is removed before cloning and again on exit,
        whether the clone or the block raised or returned normally.
        """
        target = self.clone_path(tenant, repository)
        clone_url = fork_clone_url(clone_url, repository.full_name, repository.full_forked_repo_name)
        await asyncio.to_thread(self.remove, target)
        try:
            cloned = await asyncio.to_thread(self.clone, clone_url, target, mode, repository.branch, commit)
            yield cloned
        finally:
            await asyncio.to_thread(self.remove, target)
