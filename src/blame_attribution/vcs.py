"""VCS adapter dispatch and clone-string resolution."""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Protocol

from loguru import logger

from blame_attribution.clone import validate_clone_source
from blame_attribution.errors import CloneStringError, UnsupportedSourceTypeError
from blame_attribution.models import RepositoryRef


class SourceType(str, Enum):
    GITHUB = "github"
    GITHUB_ENTERPRISE = "github_enterprise"
    GITLAB = "gitlab"
    GITLAB_ENTERPRISE = "gitlab_enterprise"
    BITBUCKET = "bitbucket"
    BITBUCKET_ENTERPRISE = "bitbucket_enterprise"
    AZURE_REPOS = "azure_repos"

    @classmethod
    def parse(cls, value: str) -> SourceType:
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise UnsupportedSourceTypeError(f"No implementation for source type: {value}") from exc


class VcsAdapter(Protocol):
    """Provider-specific service that hands out authenticated clone strings."""

    def get_clone_string(self, tenant: str, owner: str, name: str) -> str | None: ...


class JsonFileVcsAdapter:
    """Clone strings read from a JSON object mapping ``owner/name`` to a URL or path."""

    def __init__(self, mapping_path: Path):
        self.mapping_path = Path(mapping_path)
        self._mapping: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._mapping is None:
            payload = json.loads(self.mapping_path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise CloneStringError(f"Clone string mapping must be a JSON object: {self.mapping_path}")
            self._mapping = {str(key): str(value) for key, value in payload.items()}
        return self._mapping

    def get_clone_string(self, tenant: str, owner: str, name: str) -> str | None:
        return self._load().get(f"{owner}/{name}")


def select_adapter(source_type: SourceType | str, adapters: Mapping[SourceType, VcsAdapter]) -> VcsAdapter:
    """Pick the adapter for ``source_type`` once, before any repository is processed."""
    if not isinstance(source_type, SourceType):
        source_type = SourceType.parse(source_type)
    adapter = adapters.get(source_type)
    if adapter is None:
        raise UnsupportedSourceTypeError(f"No VCS adapter configured for source type: {source_type.value}")
    return adapter


def resolve_clone_strings(
    adapter: VcsAdapter,
    tenant: str,
    repositories: list[RepositoryRef],
) -> dict[str, str]:
    """Resolve a clone string per repository, failing on the first bad one.

    Raises:
        CloneStringError: The adapter failed or returned an unusable value.
    """
    clone_strings: dict[str, str] = {}
    for repository in repositories:
        logger.info(f"Getting git clone string of repo: {repository.full_name}")
        try:
            clone_string = adapter.get_clone_string(tenant, repository.owner, repository.name)
        except CloneStringError:
            raise
        except Exception as exc:
            raise CloneStringError(f"Failed to fetch git clone string for {repository.full_name}: {exc}") from exc

        if not clone_string:
            raise CloneStringError(f"Failed to fetch git clone string for {repository.full_name}: empty response")
        clone_strings[repository.full_name] = validate_clone_source(clone_string)
    return clone_strings
