"""Strips wrapper artifacts (thought blocks, fences, XML containers) from raw model output."""
import logging
import re

from .config import config

logger = logging.getLogger(__name__)

THOUGHT_TAGS = (("<think>", "</think>"), ("<thought>", "</thought>"))

OPENING_PATTERNS = [
    re.compile(r"^```[^\n]*\n"),
    re.compile(r"^<files[^>]*>\s*\n?"),
    re.compile(r"^<file[^>]*>\s*\n?"),
    re.compile(r"^<!\[CDATA\[\s*\n?"),
    re.compile(r"^<!DOCTYPE[^>]*>\s*\n?"),
]

CLOSING_PATTERNS = [
    re.compile(r"\s*```\s*$"),
    re.compile(r"\s*</files>\s*$"),
    re.compile(r"\s*</file>\s*$"),
    re.compile(r"\s*\]\]>\s*$"),
]


def strip_thinking(content: str) -> str:
    """Remove a leading thought block. Unterminated blocks are kept."""
    stripped = content.lstrip()
    for open_tag, close_tag in THOUGHT_TAGS:
        if stripped.startswith(open_tag):
            end = stripped.find(close_tag)
            if end != -1:
                return stripped[end + len(close_tag):].strip()
            return content
    return content


def collapse_outer_fences(content: str) -> str:
    """Reduce `prose ``` code ``` prose` to the code between the outermost fences."""
    first = content.find("```")
    last = content.rfind("```")
    if first == -1 or first >= last:
        return content

    before = content[:first].strip()
    after = content[last + 3:].strip()
    if not (before or after):
        return content

    end_of_first_line = content.find("\n", first)
    if -1 < end_of_first_line < last:
        return content[end_of_first_line + 1:last].rstrip()
    return content


def _strip_wrapper_once(content: str) -> str:
    for pattern in OPENING_PATTERNS:
        match = pattern.match(content)
        if match:
            content = content[match.end():]
            break

    for pattern in CLOSING_PATTERNS:
        match = pattern.search(content)
        if match and match.end() == len(content):
            content = content[:match.start()]
            break

    return content


def strip_wrappers(content: str, max_iterations: int | None = None) -> str:
    limit = max_iterations or config.max_strip_iterations
    for _ in range(limit):
        updated = _strip_wrapper_once(content)
        if updated == content:
            break
        content = updated
    else:
        logger.warning(f"Wrapper stripping stopped after {limit} iterations")
    return content.strip()


def clean(raw: str, collapse_fences: bool = True) -> str:
    """Return `raw` without thought blocks, explanatory fences and XML document wrappers.

    Each pass strictly shortens the text, so iterating to a fixed point keeps
    `clean(clean(x)) == clean(x)`. Never raises.
    """
    if not raw:
        return ""

    content = raw.strip()
    limit = config.max_strip_iterations
    for _ in range(limit):
        previous = content
        content = strip_thinking(content)
        if collapse_fences:
            content = collapse_outer_fences(content)
        content = strip_wrappers(content, limit)
        if content == previous:
            break
    else:
        logger.warning(f"Response cleaning stopped after {limit} passes")

    return content
