"""CLI implementation for chatpatch."""
import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

from chatpatch import (
    parse_response, split_segments, prepare_previews, write_previews, ReviewSession,
    CheckpointManager, WorkspaceRoot, TextSegment, RelevantSegment, EditSegment,
    merge_truncated, resolve_context_paths, expand_context_paths, ChatPatchError
)
from chatpatch.config import config, APP_DATA_DIR, AMBIGUOUS_MODES
from application_state import load_state, save_state, setup_logging

logger = logging.getLogger(__name__)


def parse_roots(values: list[str] | None) -> list[WorkspaceRoot]:
    """`NAME=PATH` pairs; without any, the current directory is the only root."""
    if not values:
        cwd = Path.cwd()
        return [WorkspaceRoot(cwd.name or "root", str(cwd))]
    roots = []
    for value in values:
        name, sep, path = value.partition("=")
        if not sep:
            path, name = value, Path(value).resolve().name
        roots.append(WorkspaceRoot(name, str(Path(path).resolve())))
    return roots


def workspace_key(roots: list[WorkspaceRoot]) -> str:
    return "|".join(r.absolute_path for r in roots)


def read_input(path: str | None) -> str:
    if not path or path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")


def print_segments(segments) -> None:
    for segment in segments:
        if isinstance(segment, TextSegment):
            first_line = segment.content.split("\n", 1)[0]
            print(f"[text] {first_line}")
        elif isinstance(segment, RelevantSegment):
            print(f"[relevant] {', '.join(segment.item.file_paths)}")
        elif isinstance(segment, EditSegment):
            edit = segment.edit
            flags = [name for name, on in (("new", edit.is_new), ("deleted", edit.is_deleted),
                                          ("renamed", edit.is_renamed)) if on]
            scope = f"{edit.workspace_name}:" if edit.workspace_name else ""
            suffix = f" ({', '.join(flags)})" if flags else ""
            if edit.is_renamed:
                suffix += f" from {edit.old_path}"
            print(f"[edit] {scope}{edit.file_path} [{edit.edit_format.value}]{suffix}")


def print_previews(previews) -> None:
    for p in previews:
        if p.error:
            print(f"  {p.file_path}: FAILED - {p.error}")
            continue
        if p.is_deleted:
            status = "delete"
        elif p.is_new:
            status = "create"
        else:
            status = "replace" if p.is_replaced else "update"
        extra = f" (fallback: {p.diff_fallback_method})" if p.is_fallback else ""
        print(f"  {p.file_path}: {status} +{p.lines_added} -{p.lines_removed}{extra}")


def review_interactively(session: ReviewSession) -> None:
    for preview in session.previews:
        if preview.error:
            continue
        answer = input(f"Apply {preview.file_path}? [y/N] ").strip().lower()
        if answer in ("y", "yes"):
            session.accept(preview.file_path, preview.workspace_name)
        else:
            session.reject(preview.file_path, preview.workspace_name)


def cmd_apply(args, roots: list[WorkspaceRoot]) -> int:
    text = read_input(args.file)
    segments = parse_response(text)
    _, edits, _ = split_segments(segments)
    if not edits:
        print("No file edits found in response.", file=sys.stderr)
        return 1

    key = workspace_key(roots)
    state = load_state(key)
    reconcile = merge_truncated if args.merge_truncated else None

    previews = prepare_previews(edits, roots, reconcile=reconcile)
    print(f"Proposed changes ({len(previews)} file(s)):")
    print_previews(previews)

    if args.dry_run:
        print("\nDry run completed (no changes applied).")
        return 0

    session = ReviewSession(previews)
    if args.yes:
        session.accept_all()
        for path in args.reject or []:
            session.reject(path.replace("\\", "/"))
    else:
        review_interactively(session)

    if not session.accepted():
        session.close()
        print("No changes applied.")
        return 0

    if config.checkpoints_enabled and not args.no_checkpoint:
        manager = CheckpointManager(roots, state=state)
        checkpoint = manager.create("Applied changes")
        print(f"Checkpoint {checkpoint.timestamp} created.", file=sys.stderr)

    result = write_previews(session)
    summaries = session.close()
    state.add_response(text, summaries)
    save_state(state, key)

    for path, status in result.applied.items():
        print(f"{status}: {path}")
    for path, error in result.errors.items():
        print(f"Error: {path}: {error}", file=sys.stderr)
    return 0 if result.ok else 1


def cmd_checkpoints(manager: CheckpointManager) -> int:
    checkpoints = manager.list()
    if not checkpoints:
        print("No checkpoints available")
        return 0
    print(f"Checkpoints ({len(checkpoints)}):")
    for c in checkpoints:
        star = "*" if c.is_starred else " "
        git = "git" if c.uses_git else "files"
        desc = f" - {c.description}" if c.description else ""
        print(f"  {star} {c.timestamp}  {format_timestamp(c.timestamp)}  [{git}] {c.title}{desc}")
    return 0


def cmd_context(args, roots: list[WorkspaceRoot]) -> int:
    key = workspace_key(roots)
    state = load_state(key)

    if args.command == "add":
        for entry in state.add_files(args.patterns):
            print(f"Added: {entry}")
    elif args.command == "remove":
        removed = state.remove_files(args.patterns)
        for entry in removed:
            print(f"Removed: {entry}")
        if not removed:
            print("Nothing to remove", file=sys.stderr)
    elif args.command == "clear":
        state.clear_files()
        print("Cleared all saved files")
    else:
        if not state.checked_files:
            print("No files in saved state")
            return 0
        files = expand_context_paths(resolve_context_paths(state.checked_files, roots))
        print(f"Saved state ({len(state.checked_files)} entries, {len(files)} files):")
        for entry in state.checked_files:
            print(f"  {entry}")
        return 0

    save_state(state, key)
    print(f"\nTotal: {len(state.checked_files)} entries in saved state")
    return 0


def cmd_config(args) -> int:
    changed = False
    if args.lifespan is not None:
        config.set_checkpoint_lifespan_hours(args.lifespan)
        print(f"Checkpoint lifespan set to {args.lifespan} hours.")
        changed = True
    if args.checkpoints is not None:
        config.set_checkpoints_enabled(args.checkpoints == "on")
        print(f"Checkpoints {'enabled' if config.checkpoints_enabled else 'disabled'}.")
        changed = True
    if args.ambiguous_mode is not None:
        config.set_default_ambiguous_mode(args.ambiguous_mode)
        print(f"Ambiguous matches: {args.ambiguous_mode}.")
        changed = True
    if args.fuzzy_threshold is not None:
        if not 0 < args.fuzzy_threshold <= 1:
            raise ValueError("Fuzzy threshold must be in (0, 1]")
        config.set_diff_fuzzy_lines_threshold(args.fuzzy_threshold)
        print(f"Fuzzy threshold set to {args.fuzzy_threshold}.")
        changed = True
    if args.fuzzy_bad_lines is not None:
        if args.fuzzy_bad_lines < 0:
            raise ValueError("Fuzzy bad lines cannot be negative")
        config.set_diff_fuzzy_max_bad_lines(args.fuzzy_bad_lines)
        print(f"Fuzzy bad lines set to {args.fuzzy_bad_lines}.")
        changed = True
    if args.strip_iterations is not None:
        if args.strip_iterations < 1:
            raise ValueError("Strip iterations must be at least 1")
        config.set_max_strip_iterations(args.strip_iterations)
        print(f"Strip iterations set to {args.strip_iterations}.")
        changed = True
    if args.git_timeout is not None:
        if args.git_timeout <= 0:
            raise ValueError("Git timeout must be positive")
        config.set_git_timeout(args.git_timeout)
        print(f"Git timeout set to {args.git_timeout} seconds.")
        changed = True

    if args.path:
        print(str(APP_DATA_DIR))
    elif not changed:
        print(f"checkpoints_enabled = {config.checkpoints_enabled}")
        print(f"checkpoint_lifespan_hours = {config.checkpoint_lifespan_hours}")
        print(f"default_ambiguous_mode = {config.default_ambiguous_mode}")
        print(f"diff_fuzzy_lines_threshold = {config.diff_fuzzy_lines_threshold}")
        print(f"diff_fuzzy_max_bad_lines = {config.diff_fuzzy_max_bad_lines}")
        print(f"max_strip_iterations = {config.max_strip_iterations}")
        print(f"git_timeout = {config.git_timeout}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatpatch",
        description="chatpatch - apply the file edits in a chat response, with checkpoints to undo them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  chatpatch parse reply.md
  pbpaste | chatpatch apply --yes
  chatpatch apply reply.md --root web=./web --root api=./api
  chatpatch checkpoints
  chatpatch restore 1718000000000
"""
    )

    roots_parser = argparse.ArgumentParser(add_help=False)
    roots_parser.add_argument("--root", action="append", metavar="NAME=PATH",
                              help="Workspace root (repeatable); defaults to the current directory")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    parse_parser = subparsers.add_parser("parse", help="Show the segments of a response")
    parse_parser.add_argument("file", nargs="?", help="Response file, '-' or omitted for stdin")

    apply_parser = subparsers.add_parser("apply", parents=[roots_parser], help="Apply the edits of a response")
    apply_parser.add_argument("file", nargs="?", help="Response file, '-' or omitted for stdin")
    apply_parser.add_argument("-y", "--yes", action="store_true", help="Accept every edit without asking")
    apply_parser.add_argument("--dry-run", action="store_true", help="Show proposed changes and exit")
    apply_parser.add_argument("--reject", action="append", metavar="PATH", help="Reject an edit (with --yes)")
    apply_parser.add_argument("--no-checkpoint", action="store_true", help="Do not create a checkpoint first")
    apply_parser.add_argument("--merge-truncated", action="store_true",
                              help="Merge truncated files locally instead of failing them")

    subparsers.add_parser("checkpoints", parents=[roots_parser], help="List checkpoints")

    checkpoint_parser = subparsers.add_parser("checkpoint", parents=[roots_parser], help="Create a checkpoint")
    checkpoint_parser.add_argument("title", help="Checkpoint title")
    checkpoint_parser.add_argument("-d", "--description", help="Checkpoint description")

    restore_parser = subparsers.add_parser("restore", parents=[roots_parser], help="Restore a checkpoint")
    restore_parser.add_argument("timestamp", type=int, help="Checkpoint timestamp")

    subparsers.add_parser("revert-restore", parents=[roots_parser], help="Undo the last restore")

    prune_parser = subparsers.add_parser("prune", parents=[roots_parser], help="Remove expired checkpoints")
    prune_parser.add_argument("--hours", type=float, help="Lifespan in hours (default from settings)")

    star_parser = subparsers.add_parser("star", parents=[roots_parser], help="Star a checkpoint to keep it")
    star_parser.add_argument("timestamp", type=int, help="Checkpoint timestamp")
    star_parser.add_argument("--off", action="store_true", help="Remove the star")

    subparsers.add_parser("clear-checkpoints", parents=[roots_parser], help="Delete all checkpoints")

    add_parser = subparsers.add_parser("add", parents=[roots_parser], help="Add files to saved context")
    add_parser.add_argument("patterns", nargs="+", help="Paths or globs; prefix with ! to exclude")

    remove_parser = subparsers.add_parser("remove", parents=[roots_parser], help="Remove files from saved context")
    remove_parser.add_argument("patterns", nargs="+", help="Entries to remove")

    subparsers.add_parser("clear", parents=[roots_parser], help="Clear saved context")
    subparsers.add_parser("state", parents=[roots_parser], help="Show saved context")

    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_parser.add_argument("--path", action="store_true", help="Print the AppData folder path")
    config_parser.add_argument("--lifespan", type=float, metavar="HOURS", help="Set the checkpoint lifespan")
    config_parser.add_argument("--checkpoints", choices=["on", "off"], help="Enable or disable checkpoints before apply")
    config_parser.add_argument("--ambiguous-mode", choices=AMBIGUOUS_MODES,
                               help="What to do when a search block matches more than once")
    config_parser.add_argument("--fuzzy-threshold", type=float, metavar="RATIO",
                               help="Line similarity needed for a fuzzy search match")
    config_parser.add_argument("--fuzzy-bad-lines", type=int, metavar="N",
                               help="Lines allowed below the threshold in a fuzzy match (0 disables)")
    config_parser.add_argument("--strip-iterations", type=int, metavar="N", help="Limit for wrapper stripping")
    config_parser.add_argument("--git-timeout", type=float, metavar="SECONDS", help="Timeout for git commands")

    return parser


def run_cli(argv: list[str] | None = None) -> int:
    """Run in CLI mode with subcommands."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(console_level=logging.INFO)
    roots = parse_roots(getattr(args, "root", None))

    try:
        if args.command == "parse":
            print_segments(parse_response(read_input(args.file)))
            return 0

        if args.command == "apply":
            return cmd_apply(args, roots)

        if args.command in ("add", "remove", "clear", "state"):
            return cmd_context(args, roots)

        if args.command == "config":
            return cmd_config(args)

        key = workspace_key(roots)
        state = load_state(key)
        manager = CheckpointManager(roots, state=state)

        if args.command == "checkpoints":
            return cmd_checkpoints(manager)
        elif args.command == "checkpoint":
            c = manager.create(args.title, args.description)
            print(f"Created checkpoint {c.timestamp}: {c.title}" + (f" - {c.description}" if c.description else ""))
        elif args.command == "restore":
            c = manager.restore(args.timestamp)
            save_state(state, key)
            print(f"Restored checkpoint {c.timestamp}: {c.title}")
        elif args.command == "revert-restore":
            manager.revert_restore()
            save_state(state, key)
            print("Reverted last restore")
        elif args.command == "prune":
            removed = manager.prune(args.hours)
            print(f"Pruned {removed} checkpoint(s)")
        elif args.command == "star":
            manager.update(args.timestamp, is_starred=not args.off)
            print(f"{'Unstarred' if args.off else 'Starred'} checkpoint {args.timestamp}")
        elif args.command == "clear-checkpoints":
            count = manager.clear()
            print(f"Deleted {count} checkpoint(s)")
        return 0

    except KeyboardInterrupt:
        print("\nCancelled", file=sys.stderr)
        return 130
    except (ChatPatchError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
