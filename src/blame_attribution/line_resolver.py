from __future__ import annotations

from blame_attribution.models import BlameLineSelection, ViolationResource


def resolve_blame_lines(
    metadata_lines: tuple[int, int] | None,
    error_lines: list[int] | None,
) -> BlameLineSelection | None:
    """Pick the line window to attribute, or ``None`` when nothing overlaps.

    Without error lines the declared span is used verbatim. Otherwise the first
    error line inside the span wins and becomes a one-line window.
    """
    if not error_lines:
        if metadata_lines is None:
            return None
        start, end = metadata_lines
        return BlameLineSelection(start_line=start, end_line=end)

    if metadata_lines is None:
        return None

    start, end = metadata_lines
    for error_line in error_lines:
        if start <= error_line <= end:
            return BlameLineSelection(start_line=error_line, end_line=error_line)
    return None


def resolve_for_resource(resource: ViolationResource) -> BlameLineSelection | None:
    return resolve_blame_lines(resource.line_range, resource.error_lines)


def line_window(selection: BlameLineSelection) -> tuple[int, int]:
    """Zero-based ``[start, stop)`` slice into blame output for ``selection``.

    Line 0 is treated as the first line, and a ``0..0`` selection always
    yields one line.
    """
    start = selection.start_line if selection.start_line == 0 else selection.start_line - 1
    stop = 1 if selection.start_line == 0 and selection.end_line == 0 else selection.end_line
    return start, stop
