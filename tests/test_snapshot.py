from __future__ import annotations

import asyncio
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from blame_attribution import clone
from blame_attribution.clone import CloneManager
from blame_attribution.config import Settings
from blame_attribution.errors import CloneError, CloneStringError, GitCommandError
from blame_attribution.models import RepositoryRef
from blame_attribution.snapshot import iter_uploadable_files, upload_directory, upload_repository_snapshots
from blame_attribution.store import Store


class MappingAdapter:
    def __init__(self, mapping: dict[str, str]):
        self.mapping = mapping
        self.calls: list[str] = []

    def get_clone_string(self, tenant: str, owner: str, name: str) -> str | None:
        self.calls.append(f"{owner}/{name}")
        return self.mapping.get(f"{owner}/{name}")


@pytest.fixture
def store(tmp_path) -> Store:
    store = Store(tmp_path / "staging.db")
    store.init_db()
    return store


def _write_tree(root: Path) -> None:
    (root / "modules" / "vpc").mkdir(parents=True)
    (root / "main.tf").write_text('resource "aws_s3_bucket" "data" {}\n', encoding="utf-8")
    (root / "modules" / "vpc" / "main.tf").write_text('resource "aws_vpc" "main" {}\n', encoding="utf-8")
    (root / "terraform.tfstate").write_bytes(b"x" * 64)


def test_iter_uploadable_files_given_symlinks_and_large_file_when_walked_then_only_small_regular_files_remain(
    tmp_path,
    log_messages,
) -> None:
    # Given
    root = tmp_path / "tree"
    root.mkdir()
    _write_tree(root)
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.tf").write_text("secret\n", encoding="utf-8")
    os.symlink(outside / "secret.tf", root / "linked.tf")
    os.symlink(outside, root / "linked-dir")

    # When
    keys = [key for _, key in iter_uploadable_files(root, max_file_size=64)]

    # Then
    assert keys == ["main.tf", "modules/vpc/main.tf"]
    assert any("terraform.tfstate" in message for message in log_messages)


def test_upload_directory_given_prefix_when_uploaded_then_files_are_keyed_under_prefix(tmp_path, store) -> None:
    # Given
    root = tmp_path / "tree"
    root.mkdir()
    _write_tree(root)

    # When
    uploaded = upload_directory(root, "scans/run-1", store, max_file_size=1024)

    # Then
    assert uploaded == 3
    assert store.list_files("scans/run-1/") == [
        "scans/run-1/main.tf",
        "scans/run-1/modules/vpc/main.tf",
        "scans/run-1/terraform.tfstate",
    ]
    assert store.get_file("scans/run-1/modules/vpc/main.tf") == b'resource "aws_vpc" "main" {}\n'


def test_upload_repository_snapshots_given_missing_branch_when_commit_given_then_full_clone_is_checked_out_and_uploaded(
    tmp_path,
    store,
    monkeypatch,
) -> None:
    # Given
    calls: list[list[str]] = []

    def fake_run_cmd(cmd: list[str]) -> str:
        calls.append(cmd)
        if "--single-branch" in cmd:
            Path(cmd[-1]).mkdir(parents=True, exist_ok=True)
            raise GitCommandError(" ".join(cmd), "warning: Could not find remote branch feature/gone to clone.", 128)
        if cmd[:2] == ["git", "clone"]:
            _write_tree(Path(cmd[-1]))
        return ""

    monkeypatch.setattr(clone, "run_cmd", fake_run_cmd)
    adapter = MappingAdapter({"acme/infra": "https://github.com/acme/infra.git"})
    repositories = [RepositoryRef(owner="acme", name="infra", branch="feature/gone")]

    # When
    scan_paths = asyncio.run(
        upload_repository_snapshots(
            "acme",
            repositories,
            "scans/run-1",
            adapter=adapter,
            clone_manager=CloneManager(tmp_path / "clones"),
            uploader=store,
            commit="5d6e7f80",
            settings=Settings(blacklist=frozenset()),
        )
    )

    # Then
    target = str(tmp_path / "clones" / "acme" / "acme" / "infra")
    assert calls[-1] == ["git", "-C", target, "checkout", "--quiet", "5d6e7f80"]
    assert calls[-2] == ["git", "clone", "--quiet", "https://github.com/acme/infra.git", target]
    assert "scans/run-1/modules/vpc/main.tf" in store.list_files("scans/run-1/")
    assert [sp.model_dump(by_alias=True) for sp in scan_paths] == [
        {"owner": "acme", "name": "infra", "path": "scans/run-1", "public": False, "isRepoOnBlackList": False}
    ]
    assert not Path(target).exists()


def test_upload_repository_snapshots_given_blacklisted_repository_when_run_then_it_is_flagged_and_not_cloned(
    tmp_path,
    store,
    monkeypatch,
    fake_clone_cmd,
) -> None:
    # Given
    calls: list[list[str]] = []
    monkeypatch.setattr(clone, "run_cmd", fake_clone_cmd(calls=calls))
    adapter = MappingAdapter({"acme/app": "https://github.com/acme/app.git"})
    repositories = [RepositoryRef(owner="acme", name="monorepo"), RepositoryRef(owner="acme", name="app")]

    # When
    scan_paths = asyncio.run(
        upload_repository_snapshots(
            "acme",
            repositories,
            "scans/run-2",
            adapter=adapter,
            clone_manager=CloneManager(tmp_path / "clones"),
            uploader=store,
            settings=Settings(blacklist=frozenset({"acme/monorepo"})),
        )
    )

    # Then
    assert adapter.calls == ["acme/app"]
    assert len(calls) == 1
    assert calls[0][:5] == ["git", "clone", "--quiet", "--depth", "1"]
    assert [(sp.name, sp.is_repo_on_black_list) for sp in scan_paths] == [("monorepo", True), ("app", False)]
    assert store.list_files("scans/run-2/") == ["scans/run-2/HEAD"]


def test_upload_repository_snapshots_given_unresolvable_clone_string_when_run_then_nothing_is_cloned(
    tmp_path,
    store,
    monkeypatch,
    fake_clone_cmd,
) -> None:
    # Given
    calls: list[list[str]] = []
    monkeypatch.setattr(clone, "run_cmd", fake_clone_cmd(calls=calls))

    # When / Then
    with pytest.raises(CloneStringError):
        asyncio.run(
            upload_repository_snapshots(
                "acme",
                [RepositoryRef(owner="acme", name="infra")],
                "scans/run-3",
                adapter=MappingAdapter({}),
                clone_manager=CloneManager(tmp_path / "clones"),
                uploader=store,
                settings=Settings(blacklist=frozenset()),
            )
        )
    assert calls == []


def test_upload_repository_snapshots_given_missing_branch_without_commit_when_run_then_clone_error_propagates(
    tmp_path,
    store,
    monkeypatch,
    fake_clone_cmd,
) -> None:
    # Given
    monkeypatch.setattr(clone, "run_cmd", fake_clone_cmd(fail_with="warning: Could not find remote branch gone to clone."))

    # When / Then
    with pytest.raises(CloneError):
        asyncio.run(
            upload_repository_snapshots(
                "acme",
                [RepositoryRef(owner="acme", name="infra", branch="gone")],
                "scans/run-4",
                adapter=MappingAdapter({"acme/infra": "https://github.com/acme/infra.git"}),
                clone_manager=CloneManager(tmp_path / "clones"),
                uploader=store,
                settings=Settings(blacklist=frozenset()),
            )
        )
    assert store.list_files("scans/run-4/") == []
    assert not (tmp_path / "clones" / "acme" / "acme" / "infra").exists()


def _git(repo: Path, *args: str) -> str:
    env = {**os.environ, "GIT_AUTHOR_DATE": "1700000000 +0000", "GIT_COMMITTER_DATE": "1700000000 +0000"}
    completed = subprocess.run(
        [
            "git",
            "-c", "user.name=Alice Smith",
            "-c", "user.email=alice@example.com",
            "-c", "commit.gpgsign=false",
            "-c", "init.defaultBranch=main",
            *args,
        ],
        cwd=repo,
        env=env,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_upload_repository_snapshots_given_real_repository_and_deleted_branch_when_run_then_commit_tree_is_uploaded(
    tmp_path,
    store,
) -> None:
    # Given
    origin = tmp_path / "origin"
    origin.mkdir()
    _git(origin, "init", "-q")
    (origin / "main.tf").write_text("v1\n", encoding="utf-8")
    _git(origin, "add", "main.tf")
    _git(origin, "commit", "-q", "-m", "first")
    first_commit = _git(origin, "rev-parse", "HEAD")
    (origin / "main.tf").write_text("v2\n", encoding="utf-8")
    _git(origin, "commit", "-q", "-am", "second")
    adapter = MappingAdapter({"acme/infra": f"file://{origin}"})

    # When
    scan_paths = asyncio.run(
        upload_repository_snapshots(
            "acme",
            [RepositoryRef(owner="acme", name="infra", branch="deleted-feature")],
            "scans/run-5",
            adapter=adapter,
            clone_manager=CloneManager(tmp_path / "clones"),
            uploader=store,
            commit=first_commit,
            settings=Settings(blacklist=frozenset()),
        )
    )

    # Then
    assert store.get_file("scans/run-5/main.tf") == b"v1\n"
    assert [sp.path for sp in scan_paths] == ["scans/run-5"]
