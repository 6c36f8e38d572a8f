"""Pydantic models shared across blame resolution, cloning, and delivery layers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ViolationResource(BaseModel):
    """A previously detected violation pinned to a file and a line range.

    Payloads from the upstream scanner use camelCase keys; ``s3FileKey`` is
    accepted as an alias of ``filePath``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True)

    violation_id: str
    source_id: str
    resource_id: str
    file_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("filePath", "file_path", "s3FileKey"),
    )
    metadata_lines: list[int] | None = None
    error_lines: list[int] | None = None
    git_blame_metadata_id: str | None = None

    @property
    def key(self) -> str:
        return f"{self.violation_id}::{self.source_id}::{self.resource_id}"

    @property
    def line_range(self) -> tuple[int, int] | None:
        """Declared ``(start, end)`` span, or ``None`` when it is missing."""
        if not self.metadata_lines:
            return None
        start = self.metadata_lines[0]
        end = self.metadata_lines[1] if len(self.metadata_lines) > 1 else start
        return start, end

    @property
    def is_attributable(self) -> bool:
        return bool(self.error_lines) or bool(self.metadata_lines)

    @property
    def normalized_path(self) -> str:
        path = self.file_path or ""
        return path[1:] if path.startswith("/") else path


class BlameLineSelection(BaseModel):
    """The single line window chosen for one resource."""

    model_config = ConfigDict(frozen=True)

    start_line: int
    end_line: int


class RawBlameLine(BaseModel):
    """One parsed line of ``git blame -t`` output."""

    commit_hash: str
    author: str
    timestamp_millis: int

    def to_attribution(self) -> BlameAttribution:
        return BlameAttribution(
            author=self.author,
            commit_hash=self.commit_hash,
            date=datetime.fromtimestamp(self.timestamp_millis / 1000, tz=timezone.utc),
        )


class BlameAttribution(BaseModel):
    """Commit, author, and date that last touched a resource's lines."""

    model_config = ConfigDict(frozen=True)

    author: str
    commit_hash: str
    date: datetime


class AttributionUpdate(BaseModel):
    """Blame result staged for the downstream consumer.

    ``git_blame_metadata_id`` is set when an existing blame record should be
    updated in place rather than created.
    """

    tenant: str
    resource_key: str
    attribution: BlameAttribution
    git_blame_metadata_id: str | None = None

    def to_payload(self) -> dict:
        metadata = {
            "customerName": self.tenant,
            "author": self.attribution.author,
            "commitHash": self.attribution.commit_hash,
            "date": self.attribution.date.isoformat(),
        }
        updated_data: dict = {"gitBlameMetadata": metadata}
        if self.git_blame_metadata_id:
            metadata["gitBlameMetadataId"] = self.git_blame_metadata_id
            updated_data["gitBlameMetadataId"] = self.git_blame_metadata_id
        return {"resourceId": self.resource_key, "updatedData": updated_data}


class PendingAttributions(BaseModel):
    """Violation source response: inline violations or a staged blob key.

    Violations stay raw payloads here; each one is validated on its own so a
    malformed record only costs that record.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    violations: list[Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("violations", "violationResources"),
    )
    staged_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("stagedKey", "staged_key", "key"),
    )


class RepositoryRef(BaseModel):
    """A configured repository to process."""

    owner: str
    name: str
    branch: str | None = None
    full_forked_repo_name: str | None = None
    repository_id: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class ClonedRepository(BaseModel):
    """Filesystem-resident clone owned by one repository's processing."""

    path: Path
    is_bare: bool
    size_on_disk_mb: float
    clone_duration_ms: float = 0.0


class ContributorRecord(BaseModel):
    email: str
    username: str


class CommitWindowCounters(BaseModel):
    current_week_commits: int = 0
    prev_week_commits: int = 0


class RepositoryActivity(BaseModel):
    """Parsed ``git log`` statistics for one repository."""

    contributors_data: list[ContributorRecord] = Field(default_factory=list)
    current_week_commits: int = 0
    prev_week_commits: int = 0


class CloneResult(BaseModel):
    """Clone log record: either size/duration on success or the failure reason."""

    repository_name: str
    repository_id: str | None = None
    clone_size: float | None = None
    clone_duration: float | None = None
    failure_time: float | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RepositoryState(str, Enum):
    PENDING = "pending"
    CLONING = "cloning"
    BLAMING = "blaming"
    EMITTING = "emitting"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class RepositoryOutcome(BaseModel):
    repository: str
    state: RepositoryState = RepositoryState.PENDING
    attributed: int = 0
    skipped: int = 0
    chunks_delivered: int = 0
    report_keys: list[str] = Field(default_factory=list)
    clone_size_mb: float | None = None
    error: str | None = None


class RunSummary(BaseModel):
    """What happened to every repository in one pipeline invocation."""

    tenant: str
    source_type: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    outcomes: list[RepositoryOutcome] = Field(default_factory=list)
    aborted: bool = False
    error: str | None = None

    @property
    def attributed(self) -> int:
        return sum(outcome.attributed for outcome in self.outcomes)

    @property
    def skipped(self) -> int:
        return sum(outcome.skipped for outcome in self.outcomes)

    def repositories_in(self, state: RepositoryState) -> list[str]:
        return [outcome.repository for outcome in self.outcomes if outcome.state == state]

    @property
    def succeeded(self) -> bool:
        return not self.aborted and not self.repositories_in(RepositoryState.FAILED)


class ScanPath(BaseModel):
    """Where an uploaded repository snapshot can be scanned from."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    owner: str
    name: str
    path: str
    public: bool = False
    is_repo_on_black_list: bool = False
