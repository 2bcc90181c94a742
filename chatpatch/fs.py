"""File system helpers used by apply and checkpoint code."""
import logging
import mimetypes
import os
import shutil
import threading
from pathlib import Path
from typing import Any

from .config import DEFAULT_HIDDEN, load_json_file, save_json_file

logger = logging.getLogger(__name__)

BINARY_EXTENSIONS = {
    '.pyc', '.pyo', '.pyd', '.so', '.dll', '.exe', '.bin', '.obj', '.o',
    '.a', '.lib', '.iso', '.tar', '.zip', '.7z', '.gz', '.rar', '.pdf',
    '.sqlite', '.db', '.class', '.jar', '.war', '.ear', '.parquet', '.ds_store'
}

def is_image_file(path: Path | str) -> bool:
    path_str = str(path).lower()
    if path_str.endswith(".svg"):
        return False
    if path_str.endswith((".webp", ".jpg", ".jpeg", ".png")):
        return True
    guess, _ = mimetypes.guess_type(str(path))
    return guess is not None and guess.startswith("image/")

def is_binary_file(path: Path | str) -> bool:
    p = Path(path)
    if p.suffix.lower() in BINARY_EXTENSIONS:
        return True
    try:
        with open(p, "rb") as f:
            chunk = f.read(1024)
            if b"\0" in chunk:
                return True
    except OSError:
        pass
    return False

def read_text(path: Path | str) -> str:
    """Read a file for editing; missing files read as empty."""
    p = Path(path)
    if not p.exists():
        return ""
    return p.read_text(encoding="utf-8")

def write_text(path: Path | str, content: str) -> None:
    """Write through a temporary sibling and swap it in, so readers never see a partial file."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(f".{p.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        # newline="" keeps the line endings already present in content
        with open(tmp, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        if p.exists():
            shutil.copymode(p, tmp)
        os.replace(tmp, p)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise

def iter_tree_files(root: Path | str):
    """Yield paths relative to `root` for every file outside hidden/build directories."""
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in DEFAULT_HIDDEN]
        for name in filenames:
            if name in DEFAULT_HIDDEN:
                continue
            yield (Path(dirpath) / name).relative_to(root)

def copy_tree(src: Path | str, dest: Path | str) -> int:
    """Copy the visible files of `src` into `dest`; returns the number copied."""
    src, dest = Path(src), Path(dest)
    count = 0
    for rel in iter_tree_files(src):
        target = dest / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src / rel, target)
        count += 1
    return count

def sync_tree(snapshot: Path | str, root: Path | str) -> dict[str, str]:
    """Make the visible files of `root` match `snapshot`. Hidden directories are left alone."""
    snapshot, root = Path(snapshot), Path(root)
    results: dict[str, str] = {}
    wanted = set(iter_tree_files(snapshot))

    for rel in list(iter_tree_files(root)):
        if rel not in wanted:
            (root / rel).unlink()
            results[rel.as_posix()] = "Deleted"

    for rel in wanted:
        src, target = snapshot / rel, root / rel
        if target.exists() and target.read_bytes() == src.read_bytes():
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, target)
        results[rel.as_posix()] = "Restored"

    logger.debug(f"Synced {root} from {snapshot}: {len(results)} change(s)")
    return results

def load_cwd_data(filepath: Path | str, key: str | None = None) -> Any:
    data = load_json_file(filepath, {})
    if isinstance(data, dict):
        return data.get(key or str(Path.cwd()))
    return None

def save_cwd_data(filepath: Path | str, value: Any, key: str | None = None, indent: int = 2) -> bool:
    data = load_json_file(filepath, {})
    if not isinstance(data, dict):
        data = {}
    data[key or str(Path.cwd())] = value
    return save_json_file(filepath, data, indent)
