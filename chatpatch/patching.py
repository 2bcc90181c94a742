"""Preview preparation and writing of parsed edits."""
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .diffing import apply_patch, apply_search_replace, diff_stats
from .errors import ChatPatchError, CancelledError, PatchApplyFailed, ReconcileFailed
from .fs import is_binary_file, is_image_file, read_text, write_text
from .models import (
    EditFormat, FileInPreview, ParsedEdit, WorkspaceRoot
)
from .paths import resolve_edit
from .review import ReviewSession

logger = logging.getLogger(__name__)

Reconciler = Callable[[str, str], str]


class OperationHandle:
    """Cancellation token for one apply of one (file_path, workspace_name) key."""

    def __init__(self, key: tuple[str, str] | None = None):
        self.key = key
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            file_path, workspace_name = self.key or (None, None)
            raise CancelledError("Superseded by a newer operation", file_path=file_path,
                                 workspace_name=workspace_name or None)


class OperationRegistry:
    """At most one live operation per key; starting a new one cancels the old one.

    Writers also hold the key's lock from their last cancellation check until
    the write is on disk, so a superseded write either never starts or
    completes before the newer one begins.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: dict[tuple[str, str], OperationHandle] = {}
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}

    def begin(self, key: tuple[str, str]) -> OperationHandle:
        handle = OperationHandle(key)
        with self._lock:
            previous = self._active.get(key)
            if previous is not None:
                logger.debug(f"Cancelling previous operation for {key[0]}")
                previous.cancel()
            self._active[key] = handle
        return handle

    def finish(self, handle: OperationHandle) -> None:
        with self._lock:
            if self._active.get(handle.key) is handle:
                del self._active[handle.key]

    def active(self, key: tuple[str, str]) -> OperationHandle | None:
        with self._lock:
            return self._active.get(key)

    def exclusive(self, key: tuple[str, str]) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())


operation_registry = OperationRegistry()


@dataclass
class ApplyResult:
    applied: dict[str, str] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def _with_trailing_newline(content: str, reference: str) -> str:
    if content and not content.endswith("\n") and (reference == "" or reference.endswith("\n")):
        eol = "\r\n" if "\r\n" in reference else "\n"
        return content + eol
    return content


def _refuse_non_text(absolute_path: str, edit: ParsedEdit) -> None:
    if is_image_file(absolute_path):
        raise PatchApplyFailed("Cannot apply text edits to an image file", file_path=edit.file_path,
                               workspace_name=edit.workspace_name, edit_format=edit.edit_format.value)
    p = Path(absolute_path)
    if p.exists() and not p.is_file():
        raise PatchApplyFailed("Path exists but is not a regular file", file_path=edit.file_path)
    if p.is_file() and is_binary_file(p):
        raise PatchApplyFailed("Cannot apply text edits to a binary file", file_path=edit.file_path,
                               workspace_name=edit.workspace_name, edit_format=edit.edit_format.value)


def _reconcile(reconcile: Reconciler | None, current: str, edit: ParsedEdit) -> str:
    context = dict(file_path=edit.file_path, workspace_name=edit.workspace_name, edit_format=edit.edit_format.value)
    if reconcile is None:
        raise ReconcileFailed("Truncated edit needs a reconciler", **context)
    try:
        result = reconcile(current, edit.payload.content)
    except ReconcileFailed:
        raise
    except Exception as e:
        raise ReconcileFailed(f"Reconciler failed: {e}", **context) from e
    if not isinstance(result, str):
        raise ReconcileFailed(f"Reconciler returned {type(result).__name__}, expected text", **context)
    return result


def propose_content(edit: ParsedEdit, current: str, reconcile: Reconciler | None = None,
                    ambiguous_mode: str | None = None, old_content: str | None = None) -> tuple[str, str | None]:
    """Return (proposed content, fallback method) for one edit over `current`."""
    if edit.is_deleted:
        return "", None

    fmt = edit.edit_format
    if fmt == EditFormat.WHOLE:
        if edit.is_renamed and edit.payload.content == "" and old_content is not None:
            return old_content, None
        return _with_trailing_newline(edit.payload.content, current), None
    if fmt == EditFormat.BEFORE_AFTER:
        base = old_content if edit.is_renamed and old_content is not None and current == "" else current
        try:
            return apply_search_replace(base, edit.payload.blocks, ambiguous_mode, edit.file_path), None
        except PatchApplyFailed as e:
            e.edit_format = fmt.value
            e.workspace_name = edit.workspace_name
            raise
    if fmt == EditFormat.DIFF:
        base = old_content if edit.is_renamed and old_content is not None and current == "" else current
        result = apply_patch(base, edit.payload.patch, edit.file_path)
        return result.content, result.fallback_method
    if fmt == EditFormat.TRUNCATED:
        return _reconcile(reconcile, current, edit), None
    raise PatchApplyFailed(f"Unsupported edit format {fmt}", file_path=edit.file_path)


def prepare_previews(edits: list[ParsedEdit], roots: list[WorkspaceRoot], reconcile: Reconciler | None = None,
                     origin_root: WorkspaceRoot | None = None, handle: OperationHandle | None = None,
                     ambiguous_mode: str | None = None) -> list[FileInPreview]:
    """Bind edits to disk and compute proposed content without writing anything.

    Edits to the same file fold into one preview in order. A failing edit
    yields a preview with `error` set so its siblings still go through.
    """
    previews: list[FileInPreview] = []
    by_path: dict[str, FileInPreview] = {}
    disk: dict[str, str] = {}

    def load(path: str) -> str:
        if path not in disk:
            try:
                disk[path] = read_text(path)
            except UnicodeDecodeError as e:
                raise PatchApplyFailed(f"File is not UTF-8 text: {e.reason}", file_path=path) from e
        return disk[path]

    for edit in edits:
        if handle is not None:
            handle.raise_if_cancelled()

        absolute_path = ""
        try:
            absolute_path, old_absolute = resolve_edit(edit, roots, origin_root, handle)
            if not edit.is_deleted:
                _refuse_non_text(absolute_path, edit)
            exists = Path(absolute_path).is_file()
            if edit.is_deleted and exists and is_binary_file(absolute_path):
                original = ""
            else:
                original = load(absolute_path)

            existing = by_path.get(absolute_path)
            current = existing.proposed_content if existing else original

            old_content = None
            if old_absolute:
                old_existing = by_path.get(old_absolute)
                old_content = old_existing.proposed_content if old_existing else load(old_absolute)

            proposed, method = propose_content(edit, current, reconcile, ambiguous_mode, old_content)
            stats = diff_stats(original, proposed)

            if existing:
                existing.proposed_content = proposed
                existing.lines_added, existing.lines_removed = stats.lines_added, stats.lines_removed
                existing.is_fallback = existing.is_fallback or method is not None
                existing.diff_fallback_method = method or existing.diff_fallback_method
                existing.edit_count += 1
                if edit.is_deleted:
                    existing.edit = edit
                logger.debug(f"Folded edit {existing.edit_count} into {edit.file_path}")
                continue

            preview = FileInPreview(
                edit=edit,
                absolute_path=absolute_path,
                original_content=original,
                proposed_content=proposed,
                lines_added=stats.lines_added,
                lines_removed=stats.lines_removed,
                is_new=not exists,
                is_fallback=method is not None,
                diff_fallback_method=method,
                is_replaced=edit.edit_format == EditFormat.WHOLE and exists and bool(original.strip())
                            and not edit.is_deleted,
                old_absolute_path=old_absolute,
            )
            previews.append(preview)
            by_path[absolute_path] = preview

        except CancelledError:
            raise
        except ChatPatchError as e:
            logger.warning(f"Edit for {edit.file_path} failed: {e}")
            previews.append(FileInPreview(
                edit=edit, absolute_path=absolute_path, is_checked=False, error=str(e)
            ))

    return previews


def _write_one(preview: FileInPreview, handle: OperationHandle) -> str:
    target = Path(preview.absolute_path)
    if not preview.is_deleted and target.is_file() and is_binary_file(target):
        raise PatchApplyFailed("Refusing to overwrite a binary file", file_path=preview.file_path)

    handle.raise_if_cancelled()

    if preview.is_deleted:
        if target.exists():
            target.unlink()
            return "Deleted"
        return "Already deleted"

    write_text(target, preview.proposed_content)

    old = preview.old_absolute_path
    if old and Path(old) != target and Path(old).exists():
        Path(old).unlink()
        return "Renamed"
    return "Created" if preview.is_new else "Updated"


def write_previews(session: ReviewSession, registry: OperationRegistry | None = None) -> ApplyResult:
    """Write every accepted preview of the session to disk."""
    registry = registry or operation_registry
    result = ApplyResult()

    for preview in session.accepted():
        handle = registry.begin(preview.edit.key)
        label = preview.file_path if not preview.workspace_name else f"{preview.workspace_name}:{preview.file_path}"
        try:
            with registry.exclusive(preview.edit.key):
                result.applied[label] = _write_one(preview, handle)
            if preview.is_fallback:
                session.mark_fallback_applied(preview)
            logger.info(f"{result.applied[label]} {preview.absolute_path}")
        except ChatPatchError as e:
            preview.error = str(e)
            result.errors[label] = str(e)
        except OSError as e:
            preview.error = f"Error writing file: {e}"
            result.errors[label] = preview.error
            logger.error(f"Error writing file '{preview.absolute_path}': {e}")
        finally:
            registry.finish(handle)

    return result
