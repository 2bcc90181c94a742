"""Splits a cleaned response into text, relevant-files and per-file edit segments."""
import logging
import re

from pattern import (
    search_block_pattern, loose_hunk_header_pattern, diff_header_pattern, git_diff_header_pattern,
    truncation_pattern, relevant_files_heading_pattern, relevant_files_item_pattern,
    file_heading_pattern, xml_path_pattern, fence_attribute_pattern, comment_path_pattern,
    html_comment_path_pattern, workspace_scope_pattern
)
from .errors import ParseAmbiguous
from .models import (
    EditFormat, ParsedEdit, WholePayload, TruncatedPayload, DiffPayload, BeforeAfterPayload,
    SearchReplaceBlock, RelevantFilesItem, TextSegment, RelevantSegment, EditSegment, Segment
)

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"^\s*(`{3,})(.*)$")
PATH_TOKEN_RE = re.compile(r"^[\w@./\\:-]+$")
EXTENSION_RE = re.compile(r"^[A-Za-z0-9_+-]{1,10}$")
LANGUAGE_WORDS = {
    "bash", "python", "javascript", "typescript", "html", "css", "json", "yaml", "xml",
    "diff", "patch", "sh", "zsh", "markdown", "md", "text", "txt", "plaintext", "sql"
}

DELETE_VERBS = {"deleted", "removed"}
NEW_VERBS = {"new"}
RENAME_VERBS = {"renamed"}

DIFF_LINE_PREFIXES = (
    " ", "+", "-", "@@", "\\", "diff ", "index ", "new file mode", "deleted file mode", "old mode",
    "new mode", "similarity index", "dissimilarity index", "rename from", "rename to", "Binary files"
)
BULLET_RE = re.compile(r"^[-*] \w")


def normalize_path(raw: str) -> tuple[str | None, str]:
    """Return (workspace_name, relative_path) for a raw path token."""
    path = raw.strip()
    # Bold markers around the whole token only; a bare `*` is a glob.
    if len(path) > 4 and path.startswith("**") and path.endswith("**") and "*" not in path[2:-2]:
        path = path[2:-2]
    path = path.strip("\"'`").strip()
    for prefix in ("file:", "filename:", "path:"):
        if path.lower().startswith(prefix):
            path = path[len(prefix):].strip().strip("\"'`")
    path = path.rstrip(":").replace("\\", "/")

    workspace_name = None
    scope = workspace_scope_pattern.match(path)
    if scope and "/" not in scope.group(1):
        workspace_name = scope.group(1).strip()
        path = scope.group(2).strip()

    while path.startswith("./"):
        path = path[2:]
    path = path.lstrip("/")
    return workspace_name, path


def _looks_like_path(token: str) -> bool:
    if not token or " " in token or "${" in token:
        return False
    if token.endswith(("/", "\\", ".")) or ".." in token:
        return False
    if token.lower() in LANGUAGE_WORDS:
        return False
    if not PATH_TOKEN_RE.match(token) or not re.search(r"[A-Za-z0-9]", token):
        return False
    return "/" in token or "." in token


def _has_extension(token: str) -> bool:
    last = token.replace("\\", "/").rstrip("/").split("/")[-1]
    if last.count(".") < 1 or last.startswith(".") and last.count(".") == 1:
        return last.startswith(".") and len(last) > 1
    return bool(EXTENSION_RE.match(last.rsplit(".", 1)[1]))


def path_from_comment(line: str) -> str | None:
    """Path hint from a comment-style line such as `// src/app.ts` or `<!-- index.html -->`."""
    match = comment_path_pattern.match(line)
    if not match:
        html = html_comment_path_pattern.match(line)
        if not html:
            return None
        token = html.group(1).strip()
    else:
        token = match.group(1)
    token = token.strip().rstrip(":")
    if _looks_like_path(token) and _has_extension(token):
        return token
    return None


def _lone_path(line: str) -> str | None:
    trimmed = line.strip()
    for marker in ("***", "**", "*"):
        if trimmed.startswith(marker) and trimmed.endswith(marker) and len(trimmed) > 2 * len(marker):
            trimmed = trimmed[len(marker):-len(marker)]
            break
    trimmed = trimmed.strip("`").rstrip(":").strip()
    if _looks_like_path(trimmed) and _has_extension(trimmed):
        return trimmed
    return None


def _backticked_path(line: str) -> str | None:
    match = re.search(r"`([^`]+)`", line)
    if not match:
        return None
    candidate = match.group(1).strip()
    if not _looks_like_path(candidate):
        return None
    before = line[:match.start()]
    after = line[match.end():]
    # A path in the middle of a sentence is prose, not a declaration.
    if re.search(r"[A-Za-z]", before) and re.search(r"[A-Za-z]", after):
        return None
    return candidate


def _path_from_heading(line: str) -> str | None:
    stripped = line.strip()
    if not stripped.startswith("#"):
        return None
    content = re.sub(r"^#{1,6}\s*", "", stripped).strip().strip("`*").strip().rstrip(":")
    content = content.strip("`")
    if _looks_like_path(content):
        return content
    return None


def declared_path(line: str) -> str | None:
    """Path named by a line that sits directly above a code fence."""
    return (
        _path_from_heading(line)
        or path_from_comment(line)
        or _lone_path(line)
        or _backticked_path(line)
    )


def path_from_fence_info(info: str) -> str | None:
    info = info.strip()
    if not info:
        return None
    attr = fence_attribute_pattern.search(info)
    if attr:
        return attr.group(1) or attr.group(2) or attr.group(3)
    head = re.split(r"\s+", info, maxsplit=1)
    if ":" in head[0]:
        candidate = head[0].split(":", 1)[1].strip()
        if _looks_like_path(candidate):
            return candidate
    if len(head) > 1:
        candidate = head[1].strip().strip("`")
        if _looks_like_path(candidate):
            return candidate
        comment = path_from_comment(head[1])
        if comment:
            return comment
    return None


def _next_nonblank(lines: list[str], start: int) -> str | None:
    for j in range(start, len(lines)):
        if lines[j].strip():
            return lines[j]
    return None


def _is_fence_open(line: str | None) -> bool:
    return line is not None and FENCE_RE.match(line) is not None


def _diff_header_paths(body: str) -> tuple[str | None, str | None]:
    from_path = to_path = None
    git_paths = None
    for line in body.splitlines():
        git = git_diff_header_pattern.match(line)
        if git:
            git_paths = git_paths or (git.group(1), git.group(2))
            continue
        match = diff_header_pattern.match(line)
        if not match:
            if line.startswith("@@"):
                break
            continue
        value = re.sub(r"\t.*$", "", match.group(2))
        value = re.sub(r"\s+\d{4}-\d{2}-\d{2}.*$", "", value).strip().strip('"')
        if match.group(1) == "---" and from_path is None:
            from_path = value[2:] if value.startswith("a/") else value
        elif match.group(1) == "+++" and to_path is None:
            to_path = value[2:] if value.startswith("b/") else value
    if git_paths:
        # Mode-only and pure rename diffs carry no ---/+++ pair
        from_path = from_path or git_paths[0]
        to_path = to_path or git_paths[1]
    return from_path, to_path


def is_diff_start(lines: list[str], i: int) -> bool:
    """True when lines[i] opens a unified diff: `diff --git`, or a `---` line directly followed by `+++`."""
    line = lines[i]
    if line.startswith("diff --git "):
        return True
    return line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ ")


def split_unified_diffs(lines: list[str]) -> list[list[str]]:
    """Split a multi-file unified diff into one chunk of lines per file.

    A new chunk starts at a `diff --git` line or a `---`/`+++` pair, but only
    once the current chunk already carries its own file header.
    """
    chunks: list[list[str]] = []
    current: list[str] = []
    for i, line in enumerate(lines):
        if current and is_diff_start(lines, i):
            has_target = any(l.startswith("+++ ") for l in current)
            has_git = any(l.startswith("diff --git ") for l in current)
            if has_target or (has_git and line.startswith("diff --git ")):
                chunks.append(current)
                current = []
        current.append(line)
    if current:
        chunks.append(current)
    return chunks


def _diff_target(chunk: list[str]) -> str | None:
    from_path, to_path = _diff_header_paths("\n".join(chunk))
    for candidate in (to_path, from_path):
        if candidate and candidate != "/dev/null" and normalize_path(candidate)[1]:
            return candidate
    return None


def _top_level_lines(body: str):
    depth = 0
    for line in body.splitlines():
        fence = FENCE_RE.match(line)
        if fence:
            if fence.group(2).strip():
                depth += 1
            elif depth > 0:
                depth -= 1
            else:
                depth += 1
            continue
        if depth == 0:
            yield line


def detect_format(body: str) -> EditFormat:
    """Pick exactly one edit format from the structural signature of a block body."""
    first = next((l for l in body.splitlines() if l.strip()), "")
    if first.startswith(("--- ", "+++ ", "diff --git ")):
        return EditFormat.DIFF
    if any(loose_hunk_header_pattern.match(l) for l in body.splitlines()):
        return EditFormat.DIFF
    if search_block_pattern.search(body):
        return EditFormat.BEFORE_AFTER
    if any(truncation_pattern.match(l) for l in _top_level_lines(body)):
        return EditFormat.TRUNCATED
    return EditFormat.WHOLE


def _split_by_ellipsis(text: str) -> list[str]:
    parts, current = [], []
    for line in text.split("\n"):
        if line.strip() == "...":
            parts.append("\n".join(current))
            current = []
        else:
            current.append(line)
    parts.append("\n".join(current))
    return parts


def parse_search_replace_blocks(body: str) -> tuple[SearchReplaceBlock, ...]:
    blocks = []
    for match in search_block_pattern.finditer(body):
        search = match.group(1) or ""
        replace = match.group(2) or ""
        search_parts = _split_by_ellipsis(search)
        replace_parts = _split_by_ellipsis(replace)
        if len(search_parts) > 1 and len(search_parts) == len(replace_parts):
            blocks.extend(SearchReplaceBlock(s, r) for s, r in zip(search_parts, replace_parts))
        else:
            blocks.append(SearchReplaceBlock(search if search.strip() else "", replace))
    return tuple(blocks)


def build_edit(file_path: str, body: str, workspace_name: str | None = None, verb: str | None = None,
               old_path: str | None = None) -> ParsedEdit:
    """Create a ParsedEdit from a block body; the heading verb decides delete/rename intent."""
    verb = (verb or "").lower()
    if verb in DELETE_VERBS:
        return ParsedEdit(file_path=file_path, edit_format=EditFormat.WHOLE, payload=WholePayload(""),
                          workspace_name=workspace_name, is_deleted=True)

    fmt = detect_format(body)
    is_new = verb in NEW_VERBS
    is_deleted = False
    is_renamed = verb in RENAME_VERBS and bool(old_path)

    if fmt == EditFormat.DIFF:
        payload = DiffPayload(body if body.endswith("\n") else body + "\n")
        from_path, to_path = _diff_header_paths(body)
        if from_path == "/dev/null":
            is_new = True
        elif to_path == "/dev/null":
            is_deleted = True
        elif from_path and to_path and not is_renamed:
            _, from_rel = normalize_path(from_path)
            _, to_rel = normalize_path(to_path)
            if from_rel != to_rel and to_rel == file_path:
                is_renamed, old_path = True, from_rel
        if is_renamed and not any(l.startswith(("@@", "+", "-")) and not l.startswith(("+++ ", "--- "))
                                  for l in body.splitlines()):
            # Pure rename: the content moves as it is
            fmt, payload = EditFormat.WHOLE, WholePayload("")
    elif fmt == EditFormat.BEFORE_AFTER:
        payload = BeforeAfterPayload(parse_search_replace_blocks(body))
    elif fmt == EditFormat.TRUNCATED:
        payload = TruncatedPayload(body)
    else:
        payload = WholePayload(body)

    logger.debug(f"Parsed {fmt.value} edit for {file_path}")
    return ParsedEdit(
        file_path=file_path, edit_format=fmt, payload=payload, workspace_name=workspace_name,
        is_new=is_new, is_deleted=is_deleted, is_renamed=is_renamed,
        old_path=old_path if is_renamed else None
    )


def strip_markdown_code_block(content: str) -> str:
    trimmed = content.strip()
    lines = trimmed.split("\n")
    if len(lines) >= 2 and lines[0].strip().startswith("```") and lines[-1].strip() == "```":
        return "\n".join(lines[1:-1])
    return trimmed


def _strip_cdata(lines: list[str]) -> list[str]:
    result = []
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("<![CDATA["):
            rest = stripped[len("<![CDATA["):]
            if rest:
                result.append(rest)
            continue
        if stripped.endswith("]]>") and stripped.replace("]]>", "").strip() == "":
            continue
        result.append(line)
    return result


def parse_relevant_files(text: str) -> tuple[RelevantFilesItem | None, str]:
    """Detect a leading `**Relevant files:**` list; returns the item and the unconsumed text."""
    lines = text.split("\n")
    start = next((i for i, l in enumerate(lines) if l.strip()), None)
    if start is None or not relevant_files_heading_pattern.match(lines[start]):
        return None, text

    paths = []
    i = start + 1
    while i < len(lines):
        line = lines[i]
        if not line.strip():
            i += 1
            continue
        match = relevant_files_item_pattern.match(line)
        if not match:
            break
        token = (match.group(1) or match.group(2) or "").strip()
        if token:
            paths.append(token.replace("\\", "/"))
        i += 1

    if not paths:
        return None, text
    return RelevantFilesItem(file_paths=tuple(paths)), "\n".join(lines[i:])


class _SegmentBuilder:
    def __init__(self):
        self.segments: list[Segment] = []
        self.text: list[str] = []

    def add_text(self, line: str) -> None:
        self.text.append(line)

    def flush_text(self) -> None:
        block = "\n".join(self.text)
        self.text = []
        if block.strip():
            self.segments.append(TextSegment(block))

    def add_edit(self, edit: ParsedEdit) -> None:
        self.flush_text()
        self.segments.append(EditSegment(edit))

    def add_segment(self, segment: Segment) -> None:
        self.flush_text()
        self.segments.append(segment)

    def finish(self) -> list[Segment]:
        self.flush_text()
        merged: list[Segment] = []
        for segment in self.segments:
            if isinstance(segment, TextSegment):
                content = segment.content.strip()
                if not content:
                    continue
                if merged and isinstance(merged[-1], TextSegment):
                    merged[-1] = TextSegment(merged[-1].content + "\n" + content)
                    continue
                segment = TextSegment(content)
            merged.append(segment)
        return merged


class _Pending:
    """A file declaration waiting for the block that carries its content."""

    def __init__(self, raw_path: str, verb: str | None = None, old_path: str | None = None):
        self.raw_path = raw_path
        self.verb = verb
        self.old_path = old_path


def _emit(builder: _SegmentBuilder, raw_path: str, body: str, verb: str | None = None,
          old_raw: str | None = None) -> None:
    workspace_name, file_path = normalize_path(raw_path)
    if not file_path:
        raise ParseAmbiguous("Empty path in file declaration")
    old_path = None
    if old_raw:
        _, old_path = normalize_path(old_raw)
    builder.add_edit(build_edit(file_path, body, workspace_name, verb, old_path))


def _parse_content_only(text: str) -> list[Segment] | None:
    """A fence-less response whose first line is a path comment is one file."""
    if "```" in text or xml_path_pattern.search(text):
        return None
    lines = text.split("\n")
    start = next((i for i, l in enumerate(lines) if l.strip()), None)
    if start is None:
        return None
    path = path_from_comment(lines[start])
    if not path:
        return None
    builder = _SegmentBuilder()
    _emit(builder, path, "\n".join(lines[start + 1:]).strip("\n"))
    return builder.finish()


def _emit_diffs(builder: _SegmentBuilder, lines: list[str], raw_lines: list[str]) -> None:
    """Emit one edit per file of a unified diff that names its own paths."""
    chunks = [c for c in split_unified_diffs(lines) if "\n".join(c).strip()]
    targets = [_diff_target(c) for c in chunks]
    if not any(targets):
        logger.debug("Degrading diff without file headers to text")
        builder.add_segment(TextSegment("\n".join(raw_lines)))
        return
    logger.debug(f"Unified diff covers {sum(1 for t in targets if t)} file(s)")
    for chunk, target in zip(chunks, targets):
        body = "\n".join(chunk).strip("\n")
        if target is None:
            builder.add_segment(TextSegment(body))
        else:
            _emit(builder, target, body)


def _is_diff_line(line: str) -> bool:
    return line.startswith(DIFF_LINE_PREFIXES)


def _consume_diff(builder: _SegmentBuilder, lines: list[str], start: int, pending: _Pending | None) -> int:
    """Take a diff written straight into the response, outside any code fence."""
    body = [lines[start]]
    i = start + 1
    while i < len(lines):
        line = lines[i]
        if FENCE_RE.match(line):
            break
        if not line.strip():
            # A blank line stays only when the diff carries on after it
            nxt = lines[i + 1] if i + 1 < len(lines) else ""
            if not _is_diff_line(nxt) or BULLET_RE.match(nxt):
                break
        elif not _is_diff_line(line):
            break
        body.append(line)
        i += 1

    while body and not body[-1].strip():
        body.pop()
    if pending is not None:
        try:
            _emit(builder, pending.raw_path, "\n".join(body), pending.verb, pending.old_path)
        except ParseAmbiguous as e:
            logger.debug(f"Degrading diff to text: {e}")
            builder.add_segment(TextSegment("\n".join(body)))
    else:
        _emit_diffs(builder, body, body)
    return i


def _resolve_block(builder: _SegmentBuilder, pending: _Pending | None, info: str, body_lines: list[str],
                   fence_text: list[str]) -> None:
    """Bind a closed code fence to a path and emit it, or degrade it to text."""
    raw_path = path_from_fence_info(info)
    verb = old_raw = None
    if pending is not None:
        raw_path = raw_path or pending.raw_path
        verb, old_raw = pending.verb, pending.old_path

    lines = list(body_lines)
    first_idx = next((i for i, l in enumerate(lines) if l.strip()), None)

    if first_idx is not None:
        first = lines[first_idx]
        xml = xml_path_pattern.search(first) if first.strip().startswith("<") else None
        if xml and (raw_path is None or normalize_path(xml.group(2))[1] == normalize_path(raw_path)[1]):
            raw_path = xml.group(2)
            tag = xml.group(1)
            inner = lines[first_idx + 1:]
            while inner and not inner[-1].strip():
                inner.pop()
            if inner and inner[-1].strip() == f"</{tag}>":
                inner.pop()
            lines = _strip_cdata(inner)
        else:
            hint = path_from_comment(first)
            if hint is None and raw_path is None and not first.strip().startswith(("#", "//")):
                hint = _lone_path(first)
            if hint and (raw_path is None or normalize_path(hint)[1] == normalize_path(raw_path)[1]):
                raw_path = hint
                del lines[first_idx]

    body = "\n".join(lines)

    if raw_path is None and detect_format(body) == EditFormat.DIFF:
        _emit_diffs(builder, lines, fence_text)
        return

    try:
        if raw_path is None:
            raise ParseAmbiguous("Code block without a file path")
        _emit(builder, raw_path, body, verb, old_raw)
    except ParseAmbiguous as e:
        logger.debug(f"Degrading block to text: {e}")
        builder.add_segment(TextSegment("\n".join(fence_text)))


def parse(cleaned: str) -> list[Segment]:
    """Split cleaned response text into ordered Text / Relevant / Edit segments.

    A block whose path cannot be determined degrades to a text segment; it
    never aborts the rest of the parse.
    """
    if not cleaned or not cleaned.strip():
        return []

    text = cleaned.replace("\r\n", "\n")
    builder = _SegmentBuilder()

    relevant, text = parse_relevant_files(text)
    if relevant is not None:
        builder.add_segment(RelevantSegment(relevant))
        if not text.strip():
            return builder.finish()

    content_only = _parse_content_only(text)
    if content_only is not None:
        return builder.finish() + content_only

    lines = text.split("\n")
    pending: _Pending | None = None
    i = 0

    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        fence = FENCE_RE.match(line)
        if fence:
            i = _consume_fence(builder, lines, i, fence, pending)
            pending = None
            continue

        xml = xml_path_pattern.search(line)
        if xml and "`" not in line[:xml.start()]:
            i = _consume_xml(builder, lines, i, xml)
            pending = None
            continue

        if stripped in ("<files>", "</files>") or stripped.startswith("<files "):
            i += 1
            continue

        if is_diff_start(lines, i) or (pending is not None and loose_hunk_header_pattern.match(line)):
            i = _consume_diff(builder, lines, i, pending)
            pending = None
            continue

        heading = file_heading_pattern.match(line)
        if heading:
            verb = heading.group(1).lower()
            rest = heading.group(2)
            tokens = re.findall(r"`([^`]+)`", rest) or [t for t in [rest.strip().strip("*").rstrip(":").split(" ")[0]] if t]
            if verb in DELETE_VERBS and tokens:
                try:
                    _emit(builder, tokens[0], "", verb)
                except ParseAmbiguous:
                    builder.add_text(line)
                i += 1
                continue
            if verb in RENAME_VERBS:
                if len(tokens) >= 2:
                    nxt = _next_nonblank(lines, i + 1)
                    if _is_fence_open(nxt):
                        builder.flush_text()
                        pending = _Pending(tokens[1], verb, tokens[0])
                    else:
                        _emit(builder, tokens[1], "", verb, tokens[0])
                    i += 1
                    continue
                builder.add_text(line)
                i += 1
                continue
            if tokens and _looks_like_path(tokens[0].strip()):
                builder.flush_text()
                pending = _Pending(tokens[0], verb)
                i += 1
                continue

        nxt = _next_nonblank(lines, i + 1)
        if stripped and _is_fence_open(nxt):
            candidate = declared_path(line)
            if candidate:
                builder.flush_text()
                pending = _Pending(candidate)
                i += 1
                continue

        builder.add_text(line)
        i += 1

    return builder.finish()


def _consume_fence(builder: _SegmentBuilder, lines: list[str], start: int, fence: re.Match,
                   pending: _Pending | None) -> int:
    ticks = len(fence.group(1))
    info = fence.group(2).strip()
    depth = 1
    body: list[str] = []
    i = start + 1

    while i < len(lines):
        line = lines[i]
        inner = FENCE_RE.match(line)
        if inner:
            inner_ticks = len(inner.group(1))
            inner_info = inner.group(2).strip()
            if not inner_info:
                if depth > 1:
                    depth -= 1
                elif inner_ticks >= ticks:
                    depth = 0
                    break
                else:
                    # Shorter bare fence inside a longer one opens a nested block.
                    depth += 1
            elif "`" not in inner_info:
                depth += 1
        body.append(line)
        i += 1

    fence_text = lines[start:i + 1] if i < len(lines) else lines[start:]
    _resolve_block(builder, pending, info, body, fence_text)
    return i + 1


def _consume_xml(builder: _SegmentBuilder, lines: list[str], start: int, xml: re.Match) -> int:
    tag, raw_path = xml.group(1), xml.group(2)
    closing = f"</{tag}>"
    first = lines[start]
    after_open = first[first.find(">", xml.end()) + 1:] if ">" in first[xml.end():] else ""

    if closing in after_open:
        inline = after_open[:after_open.index(closing)]
        _emit_xml(builder, raw_path, [inline], lines[start:start + 1])
        return start + 1

    body: list[str] = [after_open] if after_open.strip() else []
    i = start + 1
    while i < len(lines):
        if lines[i].strip().startswith(closing):
            break
        body.append(lines[i])
        i += 1
    _emit_xml(builder, raw_path, body, lines[start:i + 1])
    return i + 1


def _emit_xml(builder: _SegmentBuilder, raw_path: str, body: list[str], raw_lines: list[str]) -> None:
    content = strip_markdown_code_block("\n".join(_strip_cdata(body)))
    try:
        _emit(builder, raw_path, content)
    except ParseAmbiguous as e:
        logger.debug(f"Degrading XML block to text: {e}")
        builder.add_segment(TextSegment("\n".join(raw_lines)))
