from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from blame_attribution import blame
from blame_attribution.blame import BlameCache, BlameParser, latest_blame, parse_blame_line, split_blame_output
from blame_attribution.errors import BlameError, BlameErrorKind, GitCommandError
from blame_attribution.models import BlameLineSelection, RawBlameLine


def test_parse_blame_line_given_multi_word_author_when_parsed_then_author_and_millis_timestamp_are_extracted() -> None:
    # Given
    raw = "9abcdef0 (Carol   Jones 1701000000 -0500 4) }"

    # When
    parsed = parse_blame_line(raw)

    # Then
    assert parsed == RawBlameLine(commit_hash="9abcdef0", author="Carol Jones", timestamp_millis=1701000000000)


def test_parse_blame_line_given_boundary_commit_and_renamed_file_when_parsed_then_hash_is_cleaned() -> None:
    # Given
    raw = "^1a2b3c4 old/main.tf (Alice 1700000000 +0000 1) locals { x = f(1) }"

    # When
    parsed = parse_blame_line(raw)

    # Then
    assert parsed is not None
    assert parsed.commit_hash == "1a2b3c4"
    assert parsed.author == "Alice"
    assert parsed.timestamp_millis == 1700000000000


def test_parse_blame_line_given_no_timestamp_when_parsed_then_returns_none() -> None:
    # Given
    without_brackets = "deadbeef plain text"
    without_number = "deadbeef (Someone Else) text"

    # When / Then
    assert parse_blame_line(without_brackets) is None
    assert parse_blame_line(without_number) is None


def test_split_blame_output_given_trailing_newline_when_split_then_last_empty_line_is_dropped(blame_output) -> None:
    # Given / When
    lines = split_blame_output(blame_output)

    # Then
    assert len(lines) == 4
    assert split_blame_output("") == []
    assert split_blame_output(None) == []


def test_latest_blame_given_distinct_timestamps_when_reduced_then_maximum_wins() -> None:
    # Given
    lines = [
        RawBlameLine(commit_hash="a", author="A", timestamp_millis=3_000),
        RawBlameLine(commit_hash="b", author="B", timestamp_millis=9_000),
        RawBlameLine(commit_hash="c", author="C", timestamp_millis=1_000),
    ]

    # When
    latest = latest_blame(lines)

    # Then
    assert latest.commit_hash == "b"


def test_attribute_given_range_spanning_commits_when_attributed_then_latest_editor_wins(blame_output) -> None:
    # Given
    parser = BlameParser(split_blame_output(blame_output), "terraform/s3.tf", "acme", BlameCache())

    # When
    attribution = parser.attribute(BlameLineSelection(start_line=1, end_line=4))

    # Then
    assert attribution is not None
    assert attribution.author == "Carol Jones"
    assert attribution.commit_hash == "9abcdef0"
    assert attribution.date == datetime.fromtimestamp(1701000000, tz=timezone.utc)


def test_attribute_given_same_key_twice_when_attributed_then_cached_result_is_returned(blame_output, monkeypatch) -> None:
    # Given
    cache = BlameCache()
    parser = BlameParser(split_blame_output(blame_output), "terraform/s3.tf", "acme", cache)
    selection = BlameLineSelection(start_line=2, end_line=2)
    first = parser.attribute(selection)
    monkeypatch.setattr(parser, "parse_window", lambda _selection: pytest.fail("cache miss"))

    # When
    second = parser.attribute(selection)

    # Then
    assert second is first
    assert second.model_dump_json() == first.model_dump_json()
    assert cache.keys() == [("acme", 2, 2, "terraform/s3.tf")]


def test_blame_cache_given_different_tenants_and_files_when_keyed_then_keys_do_not_collide() -> None:
    # Given
    selection = BlameLineSelection(start_line=3, end_line=3)

    # When
    keys = {
        BlameCache.key("acme", selection, "main.tf"),
        BlameCache.key("globex", selection, "main.tf"),
        BlameCache.key("acme", selection, "other.tf"),
    }

    # Then
    assert len(keys) == 3


def test_parse_window_given_empty_output_when_parsed_then_empty_blame_error_is_raised() -> None:
    # Given
    parser = BlameParser([], "terraform/s3.tf", "acme", BlameCache())

    # When
    with pytest.raises(BlameError) as exc_info:
        parser.attribute(BlameLineSelection(start_line=1, end_line=1))

    # Then
    assert exc_info.value.kind is BlameErrorKind.EMPTY_GIT_BLAME


@pytest.mark.parametrize("start_line", [5, 6, 40])
def test_parse_window_given_output_shorter_than_start_when_parsed_then_unknown_lines_error_is_raised(
    blame_output,
    start_line,
) -> None:
    # Given
    parser = BlameParser(split_blame_output(blame_output), "terraform/s3.tf", "acme", BlameCache())

    # When
    with pytest.raises(BlameError) as exc_info:
        parser.attribute(BlameLineSelection(start_line=start_line, end_line=start_line + 2))

    # Then
    assert exc_info.value.kind is BlameErrorKind.UNKNOWN_LINES


def test_attribute_given_zero_window_when_attributed_then_first_line_is_used(blame_output) -> None:
    # Given
    parser = BlameParser(split_blame_output(blame_output), "terraform/s3.tf", "acme", BlameCache())

    # When
    attribution = parser.attribute(BlameLineSelection(start_line=0, end_line=0))

    # Then
    assert attribution is not None
    assert attribution.author == "Alice Smith"


def test_attribute_given_unparseable_lines_when_attributed_then_returns_none_and_caches_nothing() -> None:
    # Given
    cache = BlameCache()
    parser = BlameParser(["garbage without metadata"], "README.md", "acme", cache)

    # When
    attribution = parser.attribute(BlameLineSelection(start_line=1, end_line=1))

    # Then
    assert attribution is None
    assert len(cache) == 0


def test_attribute_resource_given_unattributable_resource_when_attributed_then_returns_none(
    blame_output,
    violation_model,
) -> None:
    # Given
    parser = BlameParser(split_blame_output(blame_output), "terraform/s3.tf", "acme", BlameCache())
    resource = violation_model.model_copy(update={"error_lines": [99]})

    # When
    attribution = parser.attribute_resource(resource)

    # Then
    assert attribution is None


def test_run_git_blame_given_git_failure_when_invoked_then_blame_calc_error_is_raised(monkeypatch) -> None:
    # Given
    def failing_run_git(_repo_path: Path, args: list[str]) -> str:
        raise GitCommandError("git blame -t -- missing.tf", "fatal: no such path 'missing.tf' in HEAD", 128)

    monkeypatch.setattr(blame, "run_git", failing_run_git)

    # When
    with pytest.raises(BlameError) as exc_info:
        asyncio.run(blame.run_git_blame(Path("/tmp/repo"), "missing.tf"))

    # Then
    assert exc_info.value.kind is BlameErrorKind.RUN_GIT_BLAME


def test_run_git_blame_given_file_path_when_invoked_then_timestamp_blame_of_that_path_is_requested(monkeypatch) -> None:
    # Given
    calls: list[tuple[Path, list[str]]] = []

    def fake_run_git(repo_path: Path, args: list[str]) -> str:
        calls.append((repo_path, args))
        return "output"

    monkeypatch.setattr(blame, "run_git", fake_run_git)

    # When
    output = asyncio.run(blame.run_git_blame(Path("/tmp/repo"), "dir with space/main.tf"))

    # Then
    assert output == "output"
    assert calls == [(Path("/tmp/repo"), ["blame", "-t", "--", "dir with space/main.tf"])]
