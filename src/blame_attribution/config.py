"""Runtime settings with defaults and environment overrides."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_CLONES_ROOT = Path(".blame_attribution/clones")
DEFAULT_DB_PATH = Path(".blame_attribution/staging.db")

# Full repository names weighing more than 10GB, keyed by tenant.
BLACKLIST: dict[str, list[str]] = {
    "rgare": ["rgare/uwsolutions-archive"],
    "prachakij96": ["prachakij96/AGScorp"],
    "aflac": ["aflac/Aflac-SCM"],
    "jijakahn6": ["jijakahn6/CharaD7"],
    "lendinghome": ["LendingHome/lendinghome-monolith"],
}

BRANCH_NOT_FOUND_MESSAGE = "Could not find remote branch"
NO_COMMITS_MESSAGE = "does not have any commits yet"
EXCLUDED_PATH_SEGMENTS = (".external_modules",)
# Files at or above this size are left out of uploaded snapshots.
MAX_UPLOAD_FILE_SIZE_BYTES = 2 * 1024 * 1024 * 1024


def _flatten_blacklist(blacklist: Mapping[str, list[str]]) -> frozenset[str]:
    return frozenset(name for names in blacklist.values() for name in names)


class Settings(BaseModel):
    """Tunables for the attribution pipeline and the clone lifecycle."""

    clones_root: Path = DEFAULT_CLONES_ROOT
    blacklist: frozenset[str] = Field(default_factory=lambda: _flatten_blacklist(BLACKLIST))
    excluded_path_segments: tuple[str, ...] = EXCLUDED_PATH_SEGMENTS
    chunk_size: int = Field(default=5000, ge=1)
    max_concurrent_files: int = Field(default=250, ge=1)
    max_concurrent_resources: int = Field(default=100, ge=1)
    max_consecutive_failures: int = Field(default=50, ge=1)
    staging_expiration_days: int = Field(default=7, ge=1)
    git_log_since: str = "90.days"
    max_upload_file_size_bytes: int = Field(default=MAX_UPLOAD_FILE_SIZE_BYTES, ge=1)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides) -> Settings:
        """Build settings from ``BLAME_*`` environment variables.

        ``UPDATED_VIOLATION_RESOURCES_CHUNK_SIZE`` sets the chunk size.
        ``BLAME_BLACKLIST`` is a comma separated list of extra full repository
        names to skip. Keyword ``overrides`` that are not ``None`` win over
        the environment.
        """
        env = os.environ if env is None else env
        values: dict[str, object] = {}

        env_fields = {
            "BLAME_CLONES_ROOT": "clones_root",
            "UPDATED_VIOLATION_RESOURCES_CHUNK_SIZE": "chunk_size",
            "BLAME_MAX_CONCURRENT_FILES": "max_concurrent_files",
            "BLAME_MAX_CONCURRENT_RESOURCES": "max_concurrent_resources",
            "BLAME_MAX_CONSECUTIVE_FAILURES": "max_consecutive_failures",
            "BLAME_STAGING_EXPIRATION_DAYS": "staging_expiration_days",
            "BLAME_GIT_LOG_SINCE": "git_log_since",
            "BLAME_MAX_UPLOAD_FILE_SIZE_BYTES": "max_upload_file_size_bytes",
        }
        for var, field_name in env_fields.items():
            raw = (env.get(var) or "").strip()
            if raw:
                values[field_name] = raw

        extra = [name.strip() for name in (env.get("BLAME_BLACKLIST") or "").split(",") if name.strip()]
        if extra:
            values["blacklist"] = _flatten_blacklist(BLACKLIST) | frozenset(extra)

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls.model_validate(values)

    def is_blacklisted(self, full_repo_name: str) -> bool:
        return full_repo_name in self.blacklist

    def is_excluded_path(self, file_path: str) -> bool:
        return any(segment in file_path for segment in self.excluded_path_segments)
