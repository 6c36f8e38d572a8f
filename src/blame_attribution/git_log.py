"""Parse ``git log`` history into contributors and weekly commit counters."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from loguru import logger

from blame_attribution.config import NO_COMMITS_MESSAGE
from blame_attribution.errors import GitCommandError
from blame_attribution.git import run_git
from blame_attribution.models import CommitWindowCounters, ContributorRecord, RepositoryActivity

GIT_LOG_FORMAT = "%ad %ae %an"
GIT_LOG_DATE_FORMAT = "%a %b %d %H:%M:%S %Y %z"
EMAIL_INDEX = 6
USERNAME_START_INDEX = 7


class GitLogParser:
    """Accumulate contributor and commit-window statistics over one log scan.

    ``now`` is fixed when the parser is built so every line is classified
    against the same boundaries.
    """

    def __init__(self, now: datetime | None = None):
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        self.now = now
        self.one_week_ago = now - timedelta(days=7)
        self.two_weeks_ago = now - timedelta(days=14)
        self.contributors_data: list[ContributorRecord] = []
        self.counters = CommitWindowCounters()
        self._seen_emails: set[str] = set()

    def parse(self, git_log: str | None) -> RepositoryActivity:
        lines = git_log.split("\n") if git_log else []
        logger.debug(f"Parsing {len(lines)} git log lines")

        for line in lines:
            if not line.strip():
                continue
            try:
                email, username, commit_date = self._process_line(line)
            except ValueError as exc:
                logger.warning(f"Corrupted line while parsing git log, skipping: {line!r} ({exc})")
                continue

            if email not in self._seen_emails:
                self._seen_emails.add(email)
                self.contributors_data.append(ContributorRecord(email=email, username=username))
            self._count_commit(commit_date)

        return RepositoryActivity(
            contributors_data=list(self.contributors_data),
            current_week_commits=self.counters.current_week_commits,
            prev_week_commits=self.counters.prev_week_commits,
        )

    def _process_line(self, line: str) -> tuple[str, str, datetime]:
        # Tue May 31 13:11:01 2022 +0300 user@email.com userName
        parts = line.strip().split(" ")
        if len(parts) <= USERNAME_START_INDEX:
            raise ValueError("missing email or username")

        email = parts[EMAIL_INDEX]
        username = " ".join(parts[USERNAME_START_INDEX:]).strip()
        if not email or not username:
            raise ValueError("missing email or username")

        commit_date = datetime.strptime(" ".join(parts[:EMAIL_INDEX]), GIT_LOG_DATE_FORMAT)
        return email, username, commit_date

    def _count_commit(self, commit_date: datetime) -> None:
        if self.two_weeks_ago <= commit_date < self.one_week_ago:
            self.counters.prev_week_commits += 1
        elif commit_date >= self.one_week_ago:
            self.counters.current_week_commits += 1


async def run_git_log(repo_path: Path, since: str = "90.days") -> str:
    """Return ``git log`` output in the ``%ad %ae %an`` format.

    A repository without commits yields an empty string.
    """
    try:
        return await asyncio.to_thread(
            run_git,
            repo_path,
            ["log", f"--since={since}", f"--pretty=format:{GIT_LOG_FORMAT}"],
        )
    except GitCommandError as exc:
        if NO_COMMITS_MESSAGE in exc.stderr:
            logger.info(f"Repository at {repo_path} has no commits yet")
            return ""
        raise


async def repository_activity(repo_path: Path, since: str = "90.days", now: datetime | None = None) -> RepositoryActivity:
    git_log = await run_git_log(repo_path, since=since)
    return GitLogParser(now=now).parse(git_log)
