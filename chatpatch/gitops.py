"""Thin wrapper around the git command line for checkpoint snapshots."""
import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from .config import config
from .errors import GitOperationFailed

logger = logging.getLogger(__name__)


def is_git_installed() -> bool:
    return shutil.which("git") is not None


class GitRepository:
    """One workspace root driven through `git` subprocesses.

    Every failing command raises GitOperationFailed with the captured
    stderr; read-only checks (`is_repo`) report False instead.
    """

    def __init__(self, path: Path | str, timeout: float | None = None):
        self.path = Path(path)
        self.timeout = timeout

    def _run(self, args: list[str], ok_codes: tuple[int, ...] = (0,)) -> str:
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=self.path,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="surrogateescape",
                timeout=self.timeout or config.git_timeout,
            )
        except FileNotFoundError as e:
            logger.error(f"git is not available: {e}")
            raise GitOperationFailed("git is not installed", args=args, cwd=str(self.path)) from e
        except subprocess.TimeoutExpired as e:
            logger.error(f"git {' '.join(args)} timed out in {self.path}")
            raise GitOperationFailed("git timed out", args=args, cwd=str(self.path)) from e

        if result.returncode not in ok_codes:
            logger.error(f"git {' '.join(args)} failed in {self.path}: {result.stderr.strip()}")
            raise GitOperationFailed("git command failed", args=args, returncode=result.returncode,
                                     stderr=result.stderr, cwd=str(self.path))
        return result.stdout

    def is_repo(self) -> bool:
        if not is_git_installed() or not self.path.is_dir():
            return False
        try:
            return self._run(["rev-parse", "--is-inside-work-tree"]).strip() == "true"
        except GitOperationFailed:
            return False

    def get_info(self) -> dict[str, str]:
        """Current branch name and HEAD commit hash."""
        branch = self._run(["rev-parse", "--abbrev-ref", "HEAD"]).strip()
        commit_hash = self._run(["rev-parse", "HEAD"]).strip()
        return {"branch": branch, "commit_hash": commit_hash}

    def untracked_files(self) -> list[str]:
        output = self._run(["ls-files", "--others", "--exclude-standard", "-z"])
        return [f for f in output.split("\0") if f]

    def get_diff(self) -> str:
        """Working tree changes against HEAD, untracked files included."""
        parts = [self._run(["diff", "--binary", "HEAD"])]
        for rel in self.untracked_files():
            # Exit code 1 means "files differ", which is always the case here.
            parts.append(self._run(["diff", "--no-index", "--binary", "/dev/null", rel], ok_codes=(0, 1)))
        return "".join(p if p.endswith("\n") or not p else p + "\n" for p in parts)

    def apply_diff(self, diff_text: str) -> None:
        if not diff_text.strip():
            return
        fd, patch_path = tempfile.mkstemp(suffix=".diff")
        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
                f.write(diff_text)
            try:
                self._run(["apply", "--whitespace=nowarn", patch_path])
            except GitOperationFailed:
                logger.warning(f"Clean apply failed in {self.path}, retrying with --reject")
                self._run(["apply", "--reject", "--whitespace=nowarn", patch_path])
        finally:
            os.unlink(patch_path)

    def restore(self, branch: str, commit_hash: str, diff_text: str = "") -> None:
        """Check out `branch`, reset it to `commit_hash` and replay the saved working tree diff."""
        if branch and branch != "HEAD":
            self._run(["checkout", branch])
        self._run(["reset", "--hard", commit_hash])
        self._run(["clean", "-fd"])
        self.apply_diff(diff_text)
        logger.info(f"Restored {self.path} to {branch}@{commit_hash[:8]}")
