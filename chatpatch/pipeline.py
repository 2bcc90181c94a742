"""Raw response text to ordered segments."""
import logging

from pattern import file_heading_pattern, xml_path_pattern
from .cleaner import clean, strip_thinking
from .models import EditSegment, ParsedEdit, RelevantFilesItem, RelevantSegment, Segment, TextSegment
from .parsing import FENCE_RE, declared_path, is_diff_start, parse, path_from_comment, path_from_fence_info

logger = logging.getLogger(__name__)


def has_file_declarations(text: str) -> bool:
    """True when blocks are bound to files by a heading, fence info, a path comment or diff headers.

    Such responses are kept as they are; collapsing their outer fences
    would merge several file blocks into one.
    """
    lines = text.split("\n")
    inside = False
    previous = ""
    for i, line in enumerate(lines):
        if is_diff_start(lines, i):
            return True
        fence = FENCE_RE.match(line)
        if fence:
            if not inside:
                following = next((l for l in lines[i + 1:] if l.strip()), "")
                if (path_from_fence_info(fence.group(2)) or path_from_comment(following)
                        or declared_path(previous)):
                    return True
                inside = True
            elif not fence.group(2).strip():
                inside = False
                previous = ""
            continue
        if inside:
            continue
        if file_heading_pattern.match(line) or xml_path_pattern.search(line):
            return True
        if line.strip():
            previous = line
    return False


def parse_response(raw: str) -> list[Segment]:
    """Clean and parse a raw response.

    Responses whose blocks are already bound to files only lose their
    leading thought block; everything else goes through the full cleaner.
    """
    if not raw:
        return []
    text = strip_thinking(raw.strip())
    if has_file_declarations(text):
        logger.debug("File declarations found, skipping wrapper cleanup")
        cleaned = text.strip()
    else:
        cleaned = clean(text)
    return parse(cleaned)


def split_segments(segments: list[Segment]) -> tuple[list[TextSegment], list[ParsedEdit], RelevantFilesItem | None]:
    texts = [s for s in segments if isinstance(s, TextSegment)]
    edits = [s.edit for s in segments if isinstance(s, EditSegment)]
    relevant = next((s.item for s in segments if isinstance(s, RelevantSegment)), None)
    return texts, edits, relevant
