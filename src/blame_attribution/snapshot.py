"""Clone repositories at a branch or commit and upload their working trees for scanning."""

from __future__ import annotations

import asyncio
import os
import stat
from collections.abc import Iterator
from pathlib import Path

from loguru import logger

from blame_attribution.clone import CloneManager
from blame_attribution.config import Settings
from blame_attribution.models import RepositoryRef, ScanPath
from blame_attribution.store import FileUploader
from blame_attribution.vcs import VcsAdapter, resolve_clone_strings


def iter_uploadable_files(root: Path, max_file_size: int) -> Iterator[tuple[Path, str]]:
    """Yield ``(path, relative_key)`` for regular files under ``root``.

    Symlinks are never followed or uploaded, and files of ``max_file_size``
    bytes or more are left out.
    """
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            info = os.lstat(path)
            if stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
                continue
            if info.st_size >= max_file_size:
                logger.warning(f"Skipping {path} ({info.st_size} bytes), larger than the upload limit")
                continue
            yield path, path.relative_to(root).as_posix()


def upload_directory(root: Path, prefix: str, uploader: FileUploader, max_file_size: int) -> int:
    uploaded = 0
    for path, relative_key in iter_uploadable_files(root, max_file_size):
        uploader.put_file(f"{prefix}/{relative_key}", path.read_bytes())
        uploaded += 1
    return uploaded


async def upload_repository_snapshots(
    tenant: str,
    repositories: list[RepositoryRef],
    prefix: str,
    *,
    adapter: VcsAdapter,
    clone_manager: CloneManager,
    uploader: FileUploader,
    commit: str | None = None,
    settings: Settings | None = None,
) -> list[ScanPath]:
    """Upload a shallow clone of each repository under ``prefix`` and return its scan paths.

    A branch missing on the remote falls back to a full clone checked out at
    ``commit``. Blacklisted repositories are not cloned but still get a scan
    path flagged ``is_repo_on_black_list``.

    Raises:
        CloneStringError: A clone string could not be resolved; nothing is cloned.
        CloneError: A clone failed; repositories after it are not uploaded.
    """
    settings = settings or Settings()
    logger.info(
        f"Uploading snapshots for tenant={tenant} prefix={prefix} commit={commit} "
        f"repositories={[repository.full_name for repository in repositories]}"
    )
    to_resolve = [r for r in repositories if not settings.is_blacklisted(r.full_name)]
    clone_strings = await asyncio.to_thread(resolve_clone_strings, adapter, tenant, to_resolve)

    for repository in repositories:
        if settings.is_blacklisted(repository.full_name):
            logger.info(f"Repo {repository.full_name} is on the blacklist - not uploaded")
            continue

        clone_url = clone_strings[repository.full_name]
        async with clone_manager.session(tenant, repository, clone_url, mode="shallow", commit=commit) as cloned:
            uploaded = await asyncio.to_thread(
                upload_directory,
                cloned.path,
                prefix,
                uploader,
                settings.max_upload_file_size_bytes,
            )
        logger.info(f"Uploaded {uploaded} files of {repository.full_name} to {prefix}")

    return [
        ScanPath(
            owner=repository.owner,
            name=repository.name,
            path=prefix,
            is_repo_on_black_list=settings.is_blacklisted(repository.full_name),
        )
        for repository in repositories
    ]
