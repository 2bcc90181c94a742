"""Checkpoint log: workspace snapshots taken around apply, with restore and pruning."""
import hashlib
import logging
import shutil
import threading
import time
from pathlib import Path

from pattern import description_counter_pattern
from .config import config, CHECKPOINTS_DIR, load_json_file, save_json_file
from .errors import CheckpointBusy, CheckpointNotFound, GitOperationFailed
from .fs import copy_tree, sync_tree
from .gitops import GitRepository
from .models import Checkpoint, WorkspaceRoot

logger = logging.getLogger(__name__)

LOG_FILENAME = "checkpoints.json"
BEFORE_RESTORE_TITLE = "Before checkpoint restored"
TEMPORARY_TITLE = "Temporary checkpoint"
STALE_CREATE_SECONDS = 60
FILES_DIRNAME = "files"


def _now_ms() -> int:
    return int(time.time() * 1000)


def workspace_hash(roots: list[WorkspaceRoot]) -> str:
    key = "|".join(sorted(str(Path(r.absolute_path).resolve()) for r in roots))
    return hashlib.md5(key.encode()).hexdigest()[:8]


def get_incremented_description(previous: Checkpoint | None, title: str, description: str | None) -> str | None:
    """Collapse repeated identical checkpoints into a growing `(N)` counter.

    Only applies when the latest checkpoint has the same title and the new
    description equals the latest one's description without its counter.
    """
    if previous is None or previous.title != title:
        return description

    match = description_counter_pattern.match(previous.description or "")
    if match:
        count = int(match.group(1))
        base = match.group(2) or ""
    else:
        count = 0
        base = previous.description or ""

    if (description or "") != base:
        return description

    count += 1
    return f"({count}) {base}" if base else f"({count})"


class CheckpointManager:
    """Sole owner of the checkpoint log of one workspace.

    Writers (create, prune, update, delete, clear, restore) are serialized
    by one lock; readers load the log from disk.
    """

    def __init__(self, roots: list[WorkspaceRoot], storage_dir: Path | str | None = None, state=None):
        self.roots = list(roots)
        self.storage_dir = Path(storage_dir) if storage_dir else CHECKPOINTS_DIR / workspace_hash(self.roots)
        self.state = state
        self._lock = threading.RLock()

    @property
    def log_path(self) -> Path:
        return self.storage_dir / LOG_FILENAME

    def _checkpoint_dir(self, timestamp: int) -> Path:
        return self.storage_dir / str(timestamp)

    def _load(self) -> tuple[list[Checkpoint], Checkpoint | None]:
        data = load_json_file(self.log_path, {})
        if not isinstance(data, dict):
            data = {}
        checkpoints = []
        for item in data.get("checkpoints", []):
            try:
                checkpoints.append(Checkpoint.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed checkpoint entry: {e}")
        checkpoints.sort(key=lambda c: c.timestamp, reverse=True)
        temporary = data.get("temporary")
        return checkpoints, Checkpoint.from_dict(temporary) if temporary else None

    def _save(self, checkpoints: list[Checkpoint], temporary: Checkpoint | None) -> None:
        data = {
            "checkpoints": [c.to_dict() for c in checkpoints],
            "temporary": temporary.to_dict() if temporary else None,
        }
        if not save_json_file(self.log_path, data):
            raise OSError(f"Could not write checkpoint log {self.log_path}")

    def list(self) -> list[Checkpoint]:
        return self._load()[0]

    def get(self, timestamp: int) -> Checkpoint:
        checkpoints, temporary = self._load()
        for checkpoint in checkpoints:
            if checkpoint.timestamp == timestamp:
                return checkpoint
        if temporary and temporary.timestamp == timestamp:
            return temporary
        raise CheckpointNotFound(f"No checkpoint with timestamp {timestamp}")

    def _acquire(self) -> None:
        if not self._lock.acquire(timeout=STALE_CREATE_SECONDS):
            logger.warning(f"Checkpoint operation still running after {STALE_CREATE_SECONDS}s")
            raise CheckpointBusy("Another checkpoint operation is in progress")

    def _snapshot_roots(self, directory: Path) -> tuple[dict[str, dict[str, str]], bool]:
        git_data: dict[str, dict[str, str]] = {}
        for root in self.roots:
            repo = GitRepository(root.absolute_path)
            if repo.is_repo():
                git_data[root.name] = repo.get_info()
                diff_path = directory / f"{root.name}.diff"
                with open(diff_path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                    f.write(repo.get_diff())
            else:
                copied = copy_tree(root.absolute_path, directory / FILES_DIRNAME / root.name)
                logger.debug(f"Copied {copied} file(s) of {root.name} into checkpoint")
        return git_data, bool(git_data)

    def _create(self, title: str, description: str | None, is_temporary: bool, prune: bool) -> Checkpoint:
        if prune and not is_temporary:
            self._prune_locked(config.checkpoint_lifespan_hours)

        checkpoints, temporary = self._load()
        timestamp = _now_ms()
        taken = {c.timestamp for c in checkpoints} | ({temporary.timestamp} if temporary else set())
        while timestamp in taken:
            timestamp += 1

        directory = self._checkpoint_dir(timestamp)
        directory.mkdir(parents=True, exist_ok=True)
        try:
            git_data, uses_git = self._snapshot_roots(directory)
        except (GitOperationFailed, OSError):
            shutil.rmtree(directory, ignore_errors=True)
            raise

        if not is_temporary:
            description = get_incremented_description(checkpoints[0] if checkpoints else None, title, description)

        checkpoint = Checkpoint(
            timestamp=timestamp, title=title, description=description, is_temporary=is_temporary,
            git_data=git_data, uses_git=uses_git, **(self.state.snapshot() if self.state else {})
        )

        if is_temporary:
            if temporary:
                shutil.rmtree(self._checkpoint_dir(temporary.timestamp), ignore_errors=True)
            temporary = checkpoint
        else:
            checkpoints.insert(0, checkpoint)
        self._save(checkpoints, temporary)
        logger.info(f"Created checkpoint '{title}' ({timestamp})")
        return checkpoint

    def create(self, title: str, description: str | None = None, is_temporary: bool = False) -> Checkpoint:
        """Snapshot every root and prepend the checkpoint to the log."""
        self._acquire()
        try:
            return self._create(title, description, is_temporary, prune=True)
        finally:
            self._lock.release()

    def _restore_files(self, checkpoint: Checkpoint) -> None:
        directory = self._checkpoint_dir(checkpoint.timestamp)
        for root in self.roots:
            info = checkpoint.git_data.get(root.name)
            if info:
                diff_path = directory / f"{root.name}.diff"
                diff_text = ""
                if diff_path.exists():
                    with open(diff_path, "r", encoding="utf-8", errors="surrogateescape", newline="") as f:
                        diff_text = f.read()
                GitRepository(root.absolute_path).restore(info["branch"], info["commit_hash"], diff_text)
                continue

            snapshot = directory / FILES_DIRNAME / root.name
            if snapshot.is_dir():
                sync_tree(snapshot, root.absolute_path)
            else:
                logger.warning(f"Checkpoint {checkpoint.timestamp} has no snapshot for {root.name}")

    def restore(self, timestamp: int) -> Checkpoint:
        """Bring the workspace back to a checkpoint.

        The current state is kept in the temporary slot (see revert_restore)
        and, unless the latest entry already is one, a regular
        "Before checkpoint restored" checkpoint.
        """
        self._acquire()
        try:
            target = self.get(timestamp)
            self._create(TEMPORARY_TITLE, None, is_temporary=True, prune=False)
            checkpoints = self.list()
            if not checkpoints or checkpoints[0].title != BEFORE_RESTORE_TITLE:
                self._create(BEFORE_RESTORE_TITLE, None, is_temporary=False, prune=False)

            self._restore_files(target)
            if self.state:
                self.state.restore_snapshot(target)
            logger.info(f"Restored checkpoint '{target.title}' ({timestamp})")
            return target
        finally:
            self._lock.release()

    def revert_restore(self) -> Checkpoint:
        """Undo the last restore by going back to the temporary checkpoint."""
        self._acquire()
        try:
            _, temporary = self._load()
            if temporary is None:
                raise CheckpointNotFound("No restore to revert")
            self._restore_files(temporary)
            if self.state:
                self.state.restore_snapshot(temporary)
            logger.info("Reverted last checkpoint restore")
            return temporary
        finally:
            self._lock.release()

    def _prune_locked(self, lifespan_hours: float) -> int:
        checkpoints, temporary = self._load()
        if len(checkpoints) <= 1:
            return 0
        cutoff = _now_ms() - int(lifespan_hours * 3600 * 1000)
        kept = [checkpoints[0]]
        removed = 0
        for checkpoint in checkpoints[1:]:
            if checkpoint.timestamp < cutoff and not checkpoint.is_starred:
                shutil.rmtree(self._checkpoint_dir(checkpoint.timestamp), ignore_errors=True)
                removed += 1
            else:
                kept.append(checkpoint)
        if removed:
            self._save(kept, temporary)
            logger.info(f"Pruned {removed} expired checkpoint(s)")
        return removed

    def prune(self, lifespan_hours: float | None = None) -> int:
        """Remove unstarred checkpoints older than the lifespan; the newest one always stays."""
        hours = lifespan_hours if lifespan_hours is not None else config.checkpoint_lifespan_hours
        if hours <= 0:
            raise ValueError("Lifespan must be positive")
        self._acquire()
        try:
            return self._prune_locked(hours)
        finally:
            self._lock.release()

    def update(self, timestamp: int, title: str | None = None, description: str | None = None,
               is_starred: bool | None = None) -> Checkpoint:
        self._acquire()
        try:
            checkpoints, temporary = self._load()
            for checkpoint in checkpoints:
                if checkpoint.timestamp == timestamp:
                    if title is not None:
                        checkpoint.title = title
                    if description is not None:
                        checkpoint.description = description
                    if is_starred is not None:
                        checkpoint.is_starred = is_starred
                    self._save(checkpoints, temporary)
                    return checkpoint
            raise CheckpointNotFound(f"No checkpoint with timestamp {timestamp}")
        finally:
            self._lock.release()

    def delete(self, timestamp: int) -> None:
        self._acquire()
        try:
            checkpoints, temporary = self._load()
            remaining = [c for c in checkpoints if c.timestamp != timestamp]
            if len(remaining) == len(checkpoints):
                raise CheckpointNotFound(f"No checkpoint with timestamp {timestamp}")
            shutil.rmtree(self._checkpoint_dir(timestamp), ignore_errors=True)
            self._save(remaining, temporary)
        finally:
            self._lock.release()

    def clear(self) -> int:
        """Delete every checkpoint, the temporary slot included."""
        self._acquire()
        try:
            count = len(self.list())
            if self.storage_dir.exists():
                shutil.rmtree(self.storage_dir)
            logger.info(f"Cleared {count} checkpoint(s)")
            return count
        finally:
            self._lock.release()
