"""Run ``git blame`` for one file and reduce its output to a single attribution."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from loguru import logger

from blame_attribution.errors import BlameError, BlameErrorKind, GitCommandError
from blame_attribution.git import run_git
from blame_attribution.line_resolver import line_window, resolve_for_resource
from blame_attribution.models import BlameAttribution, BlameLineSelection, RawBlameLine, ViolationResource

WHITESPACE_RUN_RE = re.compile(r"\s\s+")
NON_WORD_RE = re.compile(r"\W")

CacheKey = tuple[str, int, int, str]


async def run_git_blame(repo_path: Path, file_path: str) -> str:
    """Return raw ``git blame -t`` output for ``file_path`` inside ``repo_path``.

    Raises:
        BlameError: ``RUN_GIT_BLAME`` when the subprocess fails.
    """
    try:
        return await asyncio.to_thread(run_git, repo_path, ["blame", "-t", "--", file_path])
    except GitCommandError as exc:
        logger.warning(f"git blame failed for {file_path} in {repo_path}: {exc.stderr}")
        raise BlameError(BlameErrorKind.RUN_GIT_BLAME, f"git blame failed for {file_path}: {exc.stderr}") from exc


def split_blame_output(output: str | None) -> list[str]:
    """Split raw blame output into lines, dropping the trailing empty line."""
    if not output:
        return []
    lines = output.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def parse_blame_line(raw: str) -> RawBlameLine | None:
    """Parse ``<hash> (<author> <unix-seconds> ...) <text>`` into a ``RawBlameLine``.

    Author tokens are accumulated until the first purely numeric token, which
    is the timestamp. Returns ``None`` when no timestamp can be found.
    """
    line = WHITESPACE_RUN_RE.sub(" ", raw)
    commit_hash = NON_WORD_RE.sub("", line.split(" ")[0])

    open_index = line.find("(")
    close_index = line.rfind(")")
    if open_index == -1 or close_index <= open_index:
        return None

    tokens = [token for token in line[open_index + 1 : close_index].split(" ") if token]
    if not tokens:
        return None

    author_parts = tokens[:1]
    for token in tokens[1:]:
        if token.isdigit():
            return RawBlameLine(
                commit_hash=commit_hash,
                author=" ".join(author_parts).strip(),
                timestamp_millis=int(token) * 1000,
            )
        author_parts.append(token)
    return None


def latest_blame(lines: list[RawBlameLine]) -> RawBlameLine:
    """Most recent touch wins; ties keep the first line seen."""
    return max(lines, key=lambda line: line.timestamp_millis)


class BlameCache:
    """Attributions already computed for one file, keyed by tenant, window, and path."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, BlameAttribution] = {}

    @staticmethod
    def key(tenant: str, selection: BlameLineSelection, file_path: str) -> CacheKey:
        return (tenant, selection.start_line, selection.end_line, file_path)

    def get(self, key: CacheKey) -> BlameAttribution | None:
        return self._entries.get(key)

    def put(self, key: CacheKey, attribution: BlameAttribution) -> BlameAttribution:
        return self._entries.setdefault(key, attribution)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class BlameParser:
    """Resolve attributions for resources of one file from its blame output.

    One parser (and one cache) is shared by every resource of the file.
    """

    def __init__(self, output_lines: list[str], file_path: str, tenant: str, cache: BlameCache):
        self.output_lines = output_lines
        self.file_path = file_path
        self.tenant = tenant
        self.cache = cache

    def parse_window(self, selection: BlameLineSelection) -> list[RawBlameLine]:
        if not self.output_lines:
            raise BlameError(BlameErrorKind.EMPTY_GIT_BLAME, f"Git blame output is empty for {self.file_path}")

        start, stop = line_window(selection)
        if start >= len(self.output_lines):
            raise BlameError(
                BlameErrorKind.UNKNOWN_LINES,
                f"Trying to access unknown lines {selection.start_line}-{selection.end_line} "
                f"of {self.file_path} ({len(self.output_lines)} blame lines)",
            )

        parsed: list[RawBlameLine] = []
        for raw in self.output_lines[start:stop]:
            if not raw:
                break
            blame_line = parse_blame_line(raw)
            if blame_line is not None:
                parsed.append(blame_line)
        return parsed

    def attribute(self, selection: BlameLineSelection) -> BlameAttribution | None:
        key = BlameCache.key(self.tenant, selection, self.file_path)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        blame_lines = self.parse_window(selection)
        if not blame_lines:
            logger.info(
                f"No git blames found for {self.file_path} lines {selection.start_line}-{selection.end_line}"
            )
            return None
        return self.cache.put(key, latest_blame(blame_lines).to_attribution())

    def attribute_resource(self, resource: ViolationResource) -> BlameAttribution | None:
        """Attribute one resource; ``None`` means there is nothing to attribute."""
        selection = resolve_for_resource(resource)
        if selection is None:
            logger.debug(
                f"Resource {resource.key} is not attributable: "
                f"lines={resource.metadata_lines} error_lines={resource.error_lines}"
            )
            return None
        return self.attribute(selection)
