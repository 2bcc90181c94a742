"""Local merge of truncated file content back into the original."""
import logging

from pattern import truncation_pattern
from .errors import ReconcileFailed

logger = logging.getLogger(__name__)

ANCHOR_LINES = 10


def is_truncation_line(line: str) -> bool:
    return truncation_pattern.match(line) is not None


def _split_runs(lines: list[str]) -> list[list[str] | None]:
    """Code runs as lists, each truncation marker as None."""
    runs: list[list[str] | None] = []
    current: list[str] = []
    for line in lines:
        if is_truncation_line(line):
            if current:
                runs.append(current)
                current = []
            runs.append(None)
        else:
            current.append(line)
    if current:
        runs.append(current)
    return runs


def _trim_blank(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _locate(original: list[str], anchor: list[str], start: int) -> int | None:
    if not anchor:
        return None
    needle = [l.strip() for l in anchor]
    stripped = [l.strip() for l in original]
    n = len(needle)
    for i in range(start, len(stripped) - n + 1):
        if stripped[i:i + n] == needle:
            return i
    return None


def _locate_run_start(original: list[str], run: list[str], cursor: int) -> int | None:
    code = _trim_blank(run)
    for size in range(min(ANCHOR_LINES, len(code)), 0, -1):
        found = _locate(original, code[:size], cursor)
        if found is not None:
            # Blank lines leading the run stand for blank lines of the original.
            blank = _count_blank(run)
            while blank and found > cursor and not original[found - 1].strip():
                found -= 1
                blank -= 1
            return found
    return None


def _count_blank(lines) -> int:
    count = 0
    for line in lines:
        if line.strip():
            break
        count += 1
    return count


def _locate_run_end(original: list[str], run: list[str], cursor: int) -> int | None:
    code = _trim_blank(run)
    for size in range(min(ANCHOR_LINES, len(code)), 0, -1):
        tail = code[-size:]
        found = _locate(original, tail, cursor)
        if found is not None:
            end = found + size
            blank = _count_blank(reversed(run))
            while blank and end < len(original) and not original[end].strip():
                end += 1
                blank -= 1
            return end
    return None


def merge_truncated(original: str, truncated: str) -> str:
    """Replace every ellipsis marker in `truncated` with the original lines it stands for.

    Code runs are anchored to the original by their first and last lines.
    Raises ReconcileFailed when a run next to a marker cannot be anchored.
    """
    original_lines = original.replace("\r\n", "\n").split("\n")
    runs = _split_runs(truncated.replace("\r\n", "\n").split("\n"))

    output: list[str] = []
    cursor = 0
    pending_marker = False

    for run in runs:
        if run is None:
            pending_marker = True
            continue

        if pending_marker:
            start = _locate_run_start(original_lines, run, cursor)
            if start is None:
                raise ReconcileFailed("Could not anchor code after an ellipsis marker")
            start = max(start, cursor)
            output.extend(original_lines[cursor:start])
            cursor = start
            pending_marker = False

        output.extend(run)
        end = _locate_run_end(original_lines, run, cursor)
        if end is not None:
            cursor = end
        else:
            logger.debug("Code run not found in original, treating it as inserted")

    if pending_marker:
        output.extend(original_lines[cursor:])

    merged = "\n".join(output)
    if original.endswith("\n") and not merged.endswith("\n"):
        merged += "\n"
    return merged
