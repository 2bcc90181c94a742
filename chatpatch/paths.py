"""Binds raw path tokens from a response to absolute paths under workspace roots."""
import fnmatch
import logging
import os
from pathlib import Path

from .errors import PathUnresolvable
from .fs import iter_tree_files
from .models import ParsedEdit, WorkspaceRoot
from .parsing import normalize_path

logger = logging.getLogger(__name__)

EXCLUDE_MARKER = "!"


def create_safe_path(root: str, relative_path: str) -> str:
    """Join `relative_path` onto `root`, refusing results that leave the root."""
    root_abs = os.path.normpath(os.path.abspath(root))
    target = os.path.normpath(os.path.join(root_abs, relative_path))
    if target != root_abs and not target.startswith(root_abs + os.sep):
        raise PathUnresolvable(f"Path escapes workspace root {root_abs}", file_path=relative_path)
    return target


def find_root(roots: list[WorkspaceRoot], name: str) -> WorkspaceRoot | None:
    for root in roots:
        if root.name == name:
            return root
    return None


def resolve(raw_path: str, roots: list[WorkspaceRoot], origin_root: WorkspaceRoot | None = None,
            workspace_name: str | None = None, handle=None) -> str:
    """Resolve a raw path to an absolute path bound to one workspace root.

    Order: origin_root, explicit `Name:path` scope (or `workspace_name`),
    the single root, a leading folder name in multi-root workspaces, the
    first root holding the file on disk, and finally the first root.
    """
    if not roots:
        raise PathUnresolvable("No workspace roots to resolve against", file_path=raw_path)

    scoped_name, relative = normalize_path(raw_path)
    workspace_name = workspace_name or scoped_name
    if not relative:
        raise PathUnresolvable("Empty path", file_path=raw_path, workspace_name=workspace_name)

    if origin_root is not None:
        return create_safe_path(origin_root.absolute_path, relative)

    if workspace_name:
        root = find_root(roots, workspace_name)
        if root is None:
            raise PathUnresolvable(f"Unknown workspace '{workspace_name}'", file_path=relative,
                                   workspace_name=workspace_name)
        return create_safe_path(root.absolute_path, relative)

    if len(roots) == 1:
        return create_safe_path(roots[0].absolute_path, relative)

    first, _, rest = relative.partition("/")
    if rest:
        root = find_root(roots, first)
        if root is not None:
            return create_safe_path(root.absolute_path, rest)

    for root in roots:
        if handle is not None:
            handle.raise_if_cancelled()
        candidate = create_safe_path(root.absolute_path, relative)
        if os.path.exists(candidate):
            return candidate

    logger.debug(f"{relative} not found in any root, defaulting to {roots[0].name}")
    return create_safe_path(roots[0].absolute_path, relative)


def resolve_edit(edit: ParsedEdit, roots: list[WorkspaceRoot], origin_root: WorkspaceRoot | None = None,
                 handle=None) -> tuple[str, str | None]:
    """Return (absolute_path, old_absolute_path) for an edit."""
    try:
        target = resolve(edit.file_path, roots, origin_root, edit.workspace_name, handle)
        old = None
        if edit.is_renamed and edit.old_path:
            old = resolve(edit.old_path, roots, origin_root, edit.workspace_name, handle)
        return target, old
    except PathUnresolvable as e:
        e.edit_format = edit.edit_format.value
        raise


def resolve_context_paths(paths: list[str], roots: list[WorkspaceRoot],
                          origin_root: WorkspaceRoot | None = None) -> list[str]:
    """Resolve saved context entries; `!pattern` exclusions keep their marker."""
    resolved = []
    for entry in paths:
        excluded = entry.startswith(EXCLUDE_MARKER)
        raw = entry[1:] if excluded else entry
        absolute = resolve(raw, roots, origin_root)
        resolved.append(EXCLUDE_MARKER + absolute if excluded else absolute)
    return resolved


def _matches(path: str, pattern: str) -> bool:
    if fnmatch.fnmatch(path, pattern):
        return True
    # A directory entry covers everything below it.
    return path.startswith(pattern.rstrip("/" + os.sep) + os.sep)


def expand_context_paths(resolved: list[str]) -> list[str]:
    """Expand resolved include/exclude entries (globs allowed) to a sorted list of files."""
    includes = [p for p in resolved if not p.startswith(EXCLUDE_MARKER)]
    excludes = [p[1:] for p in resolved if p.startswith(EXCLUDE_MARKER)]

    files: set[str] = set()
    for pattern in includes:
        if any(ch in pattern for ch in "*?["):
            base = Path(pattern)
            while any(ch in base.name for ch in "*?[") or not base.exists():
                if base.parent == base:
                    break
                base = base.parent
            if base.is_dir():
                for rel in iter_tree_files(base):
                    candidate = str(base / rel)
                    if fnmatch.fnmatch(candidate, pattern):
                        files.add(candidate)
        elif os.path.isdir(pattern):
            files.update(str(Path(pattern) / rel) for rel in iter_tree_files(pattern))
        elif os.path.isfile(pattern):
            files.add(pattern)

    return sorted(f for f in files if not any(_matches(f, ex) for ex in excludes))
