"""Line statistics, unified patch application and search/replace folding."""
import difflib
import logging
import re
from dataclasses import dataclass

from pattern import hunk_header_pattern, loose_hunk_header_pattern
from .config import config, AMBIGUOUS_MODES
from .errors import PatchApplyFailed
from .models import SearchReplaceBlock

logger = logging.getLogger(__name__)

RECOUNT = "recount"
SEARCH_AND_REPLACE = "search_and_replace"


@dataclass(frozen=True)
class DiffStats:
    lines_added: int = 0
    lines_removed: int = 0


@dataclass
class Hunk:
    old_start: int | None
    old_count: int | None
    new_start: int | None
    new_count: int | None
    lines: list[tuple[str, str]]

    @property
    def old_lines(self) -> list[str]:
        return [text for op, text in self.lines if op in (" ", "-")]

    @property
    def new_lines(self) -> list[str]:
        return [text for op, text in self.lines if op in (" ", "+")]


@dataclass(frozen=True)
class PatchResult:
    content: str
    fallback_method: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_method is not None


class _HunkMismatch(Exception):
    pass


def _normalized_lines(text: str) -> list[str]:
    return [line.rstrip() for line in re.split(r"\r?\n", text)]


def _edit_distance(a: list[str], b: list[str]) -> int:
    """Fewest inserted plus deleted lines turning `a` into `b` (Myers, O((N+M)D))."""
    n, m = len(a), len(b)
    furthest = {1: 0}
    for d in range(n + m + 1):
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and furthest[k - 1] < furthest[k + 1]):
                x = furthest[k + 1]
            else:
                x = furthest[k - 1] + 1
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            furthest[k] = x
            if x >= n and y >= m:
                return d
    return n + m


def diff_stats(original: str, proposed: str) -> DiffStats:
    """Count added/removed lines of a minimal line diff, ignoring trailing whitespace.

    Minimal counts keep the result symmetric: swapping the arguments swaps
    added and removed.
    """
    a = _normalized_lines(original)
    b = _normalized_lines(proposed)
    if a == b:
        return DiffStats()

    start = 0
    while start < len(a) and start < len(b) and a[start] == b[start]:
        start += 1
    end_a, end_b = len(a), len(b)
    while end_a > start and end_b > start and a[end_a - 1] == b[end_b - 1]:
        end_a -= 1
        end_b -= 1
    a, b = a[start:end_a], b[start:end_b]

    common = (len(a) + len(b) - _edit_distance(a, b)) // 2
    return DiffStats(len(b) - common, len(a) - common)


def _get_line_ending(text: str) -> str | None:
    if text.endswith("\r\n"):
        return "\r\n"
    elif text.endswith("\n"):
        return "\n"
    return None


def _split_line_content_and_ending(line: str) -> tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    elif line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def build_tolerant_regex(text: str) -> str:
    if not text:
        return ""

    lines = text.splitlines(keepends=True)
    pattern_parts = []
    overall_ending = _get_line_ending(text)

    for i, line_str in enumerate(lines):
        is_last_line = i == len(lines) - 1
        content, line_ending = _split_line_content_and_ending(line_str)

        if content.strip() == "":
            content_regex = r"\s*"
        else:
            content_regex = r"[ \t\f\v]*" + re.escape(content.strip()) + r"[ \t\f\v]*"

        ending_regex = ""
        if line_ending:
            if is_last_line and overall_ending == line_ending:
                ending_regex = r"(?:" + re.escape(line_ending) + r")?"
            else:
                ending_regex = r"\r?\n"

        pattern_parts.append(content_regex + ending_regex)

    return "".join(pattern_parts)


def find_best_fuzzy_match(content: str, search_block: str, line_threshold: float,
                          max_bad_lines: int) -> tuple[int, int] | None:
    search_lines = search_block.splitlines()
    if not search_lines:
        return None

    n_search = len(search_lines)
    content_lines = content.splitlines(keepends=True)
    n_content = len(content_lines)

    if n_content < n_search:
        return None

    line_offsets = [0]
    for line in content_lines:
        line_offsets.append(line_offsets[-1] + len(line))

    search_lines_stripped = [s.strip() for s in search_lines]
    content_lines_stripped = [c.strip() for c in content_lines]

    best_bad_count = max_bad_lines + 1
    best_total_score = -1.0
    best_window_start = -1

    for i in range(n_content - n_search + 1):
        current_bad_lines = 0
        current_total_score = 0.0
        possible = True

        for j in range(n_search):
            s_line = search_lines_stripped[j]
            c_line = content_lines_stripped[i + j]

            if s_line == c_line:
                score = 1.0
            else:
                score = difflib.SequenceMatcher(None, c_line, s_line).ratio()

            current_total_score += score

            if score < line_threshold:
                possible = False
                break

            if score < 1.0:
                current_bad_lines += 1

            if current_bad_lines > max_bad_lines:
                possible = False
                break

        if possible:
            if (best_window_start == -1 or current_bad_lines < best_bad_count
                    or current_bad_lines == best_bad_count and current_total_score > best_total_score):
                best_bad_count = current_bad_lines
                best_total_score = current_total_score
                best_window_start = i

    if best_window_start != -1:
        end = line_offsets[best_window_start + n_search]
        # Keep the line break of the last matched line outside the replaced span.
        last = content_lines[best_window_start + n_search - 1]
        _, ending = _split_line_content_and_ending(last)
        if ending and not search_block.endswith(("\n", "\r\n")):
            end -= len(ending)
        return line_offsets[best_window_start], end

    return None


def replace_block(content: str, search: str, replace: str, ambiguous_mode: str | None = None,
                  file_path: str | None = None) -> str:
    """Apply one search/replace pair to `content`."""
    ambiguous_mode = ambiguous_mode or config.default_ambiguous_mode
    if ambiguous_mode not in AMBIGUOUS_MODES:
        raise ValueError(f"Unknown ambiguous mode: {ambiguous_mode}")

    if search.strip() == "":
        if content.strip() == "":
            return replace
        raise PatchApplyFailed("Search text cannot be blank for an existing file", file_path=file_path)

    if not search.endswith("\n") and replace.endswith("\n"):
        replace = replace[:-1]

    pattern = re.compile(build_tolerant_regex(search))
    matches = list(pattern.finditer(content))

    if not matches and config.diff_fuzzy_max_bad_lines > 0:
        fuzzy = find_best_fuzzy_match(
            content, search, config.diff_fuzzy_lines_threshold, config.diff_fuzzy_max_bad_lines
        )
        if fuzzy:
            start, end = fuzzy
            logger.debug(f"Fuzzy match used for block in {file_path}")
            return content[:start] + replace + content[end:]

    if not matches:
        raise PatchApplyFailed("Search text not found in file", file_path=file_path)

    if len(matches) == 1:
        start, end = matches[0].span()
        return content[:start] + replace + content[end:]

    if ambiguous_mode == "fail":
        raise PatchApplyFailed(f"Search text ambiguous ({len(matches)} matches)", file_path=file_path)
    if ambiguous_mode == "ignore":
        return content

    running = content
    for m in reversed(matches):
        start, end = m.span()
        running = running[:start] + replace + running[end:]
    return running


def apply_search_replace(content: str, blocks: tuple[SearchReplaceBlock, ...] | list[SearchReplaceBlock],
                         ambiguous_mode: str | None = None, file_path: str | None = None) -> str:
    """Fold blocks over the evolving content; each block sees the result of the previous ones."""
    for block in blocks:
        content = replace_block(content, block.search, block.replace, ambiguous_mode, file_path)
    return content


def parse_hunks(patch: str) -> list[Hunk]:
    """Parse the hunks of a unified diff. Header lines before the first hunk are skipped."""
    hunks: list[Hunk] = []
    current: Hunk | None = None
    in_header = True

    lines = patch.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    for line in lines:
        header = hunk_header_pattern.match(line)
        if header or loose_hunk_header_pattern.match(line):
            in_header = False
            if header:
                current = Hunk(
                    old_start=int(header.group(1)),
                    old_count=int(header.group(2)) if header.group(2) is not None else 1,
                    new_start=int(header.group(3)),
                    new_count=int(header.group(4)) if header.group(4) is not None else 1,
                    lines=[],
                )
            else:
                current = Hunk(None, None, None, None, [])
            hunks.append(current)
            continue

        if in_header and (line.startswith(("--- ", "+++ ", "diff ", "index ", "new file", "deleted file",
                                          "similarity", "rename ", "old mode", "new mode")) or not line.strip()):
            continue

        if current is None:
            # Hunk text without any @@ header
            current = Hunk(None, None, None, None, [])
            hunks.append(current)
            in_header = False

        if line.startswith("\\"):
            continue
        if line == "":
            current.lines.append((" ", ""))
        elif line[0] in " +-":
            current.lines.append((line[0], line[1:]))
        else:
            # Context lines whose leading space was dropped
            current.lines.append((" ", line))

    return [h for h in hunks if h.lines]


def _squash(line: str) -> str:
    return " ".join(line.split())


def _find_positions(lines: list[str], needle: list[str], start: int, normalize: bool) -> list[int]:
    if not needle:
        return []
    if normalize:
        haystack = [_squash(l) for l in lines]
        needle = [_squash(l) for l in needle]
    else:
        haystack = lines
    n = len(needle)
    return [i for i in range(start, len(haystack) - n + 1) if haystack[i:i + n] == needle]


def _apply_hunks(lines: list[str], hunks: list[Hunk], strict: bool) -> list[str]:
    result = list(lines)
    offset = 0
    cursor = 0

    for hunk in hunks:
        old, new = hunk.old_lines, hunk.new_lines

        if strict:
            if hunk.old_start is None:
                raise _HunkMismatch("hunk without line numbers")
            if hunk.old_count != len(old) or hunk.new_count != len(new):
                raise _HunkMismatch("hunk line counts do not match its header")

        expected = None
        if hunk.old_start is not None:
            base = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
            expected = max(0, base + offset)

        if not old:
            pos = expected if expected is not None else len(result)
            pos = min(max(pos, cursor), len(result))
        else:
            positions = _find_positions(result, old, cursor, normalize=not strict)
            if not positions:
                raise _HunkMismatch("hunk context not found")
            pos = min(positions, key=lambda p: abs(p - expected)) if expected is not None else positions[0]

        result[pos:pos + len(old)] = new
        offset += len(new) - len(old)
        cursor = pos + len(new)

    return result


def _join(lines: list[str], eol: str, trailing_newline: bool) -> str:
    text = eol.join(lines)
    if trailing_newline and lines:
        text += eol
    return text


def apply_patch(original: str, patch: str, file_path: str | None = None) -> PatchResult:
    """Apply a unified diff to `original`.

    Tries a strict application first, then one that ignores header counts
    and whitespace (`recount`), then treats each hunk as a search/replace
    pair (`search_and_replace`). Raises PatchApplyFailed when all fail.
    """
    hunks = parse_hunks(patch)
    if not hunks:
        raise PatchApplyFailed("Diff contains no hunks", file_path=file_path, edit_format="diff")

    eol = "\r\n" if "\r\n" in original else "\n"
    trailing_newline = original.endswith("\n") or original == ""
    lines = original.replace("\r\n", "\n").split("\n")
    if original.endswith("\n"):
        lines.pop()
    if original == "":
        lines = []

    for strict, method in ((True, None), (False, RECOUNT)):
        try:
            patched = _apply_hunks(lines, hunks, strict)
            if method:
                logger.info(f"Patch for {file_path} applied with {method} fallback")
            return PatchResult(_join(patched, eol, trailing_newline), method)
        except _HunkMismatch as e:
            logger.debug(f"{'Strict' if strict else 'Recount'} patch failed for {file_path}: {e}")

    content = original
    try:
        for hunk in hunks:
            search = eol.join(hunk.old_lines)
            replace = eol.join(hunk.new_lines)
            if not search.strip():
                raise PatchApplyFailed("Hunk has no context to search for", file_path=file_path)
            content = replace_block(content, search, replace, "fail", file_path)
    except PatchApplyFailed as e:
        raise PatchApplyFailed(f"Diff could not be applied: {e.message}", file_path=file_path,
                               edit_format="diff") from e

    logger.info(f"Patch for {file_path} applied with {SEARCH_AND_REPLACE} fallback")
    return PatchResult(content, SEARCH_AND_REPLACE)
