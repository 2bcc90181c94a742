"""Session state snapshotted into checkpoints, and logging setup."""
import logging
import sys
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from chatpatch.config import APP_DATA_DIR
from chatpatch.fs import load_cwd_data, save_cwd_data
from chatpatch.models import Checkpoint

STATE_PATH = str(APP_DATA_DIR / "state.json")
MAX_RESPONSE_HISTORY = 50

logger = logging.getLogger(__name__)


@dataclass
class ResponseHistoryItem:
    """One applied response, as shown again after a checkpoint restore."""
    response: str
    created_at: float = field(default_factory=time.time)
    raw_instructions: str | None = None
    files: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "created_at": self.created_at,
            "raw_instructions": self.raw_instructions,
            "files": self.files,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResponseHistoryItem":
        return cls(
            response=data.get("response", ""),
            created_at=data.get("created_at", 0.0),
            raw_instructions=data.get("raw_instructions"),
            files=list(data.get("files") or []),
        )


@dataclass
class AppState:
    """Host session metadata: context selection, open tabs and applied responses."""
    checked_files: list[str] = field(default_factory=list)  # "!" prefix marks an exclusion
    checked_websites: list[str] = field(default_factory=list)
    active_tabs: list[dict] = field(default_factory=list)
    response_history: list[ResponseHistoryItem] = field(default_factory=list)

    def add_files(self, entries: list[str]) -> list[str]:
        added = []
        for entry in entries:
            entry = entry.replace("\\", "/")
            if entry not in self.checked_files:
                self.checked_files.append(entry)
                added.append(entry)
        return added

    def remove_files(self, entries: list[str]) -> list[str]:
        targets = {e.replace("\\", "/") for e in entries}
        removed = [f for f in self.checked_files if f in targets]
        self.checked_files = [f for f in self.checked_files if f not in targets]
        return removed

    def clear_files(self) -> int:
        count = len(self.checked_files)
        self.checked_files = []
        return count

    def add_response(self, response: str, file_summaries: list[dict],
                     raw_instructions: str | None = None) -> ResponseHistoryItem:
        item = ResponseHistoryItem(response=response, raw_instructions=raw_instructions, files=file_summaries)
        self.response_history.append(item)
        if len(self.response_history) > MAX_RESPONSE_HISTORY:
            self.response_history = self.response_history[-MAX_RESPONSE_HISTORY:]
        return item

    def snapshot(self) -> dict[str, Any]:
        """Fields copied into a checkpoint."""
        return {
            "response_history": [item.to_dict() for item in self.response_history],
            "checked_files": list(self.checked_files),
            "checked_websites": list(self.checked_websites),
            "active_tabs": [dict(tab) for tab in self.active_tabs],
        }

    def restore_snapshot(self, checkpoint: Checkpoint) -> None:
        self.response_history = [ResponseHistoryItem.from_dict(d) for d in checkpoint.response_history]
        self.checked_files = list(checkpoint.checked_files)
        self.checked_websites = list(checkpoint.checked_websites)
        self.active_tabs = [dict(tab) for tab in checkpoint.active_tabs]

    def to_dict(self) -> dict:
        return self.snapshot()

    @classmethod
    def from_dict(cls, data: dict) -> "AppState":
        return cls(
            checked_files=list(data.get("checked_files") or []),
            checked_websites=list(data.get("checked_websites") or []),
            active_tabs=list(data.get("active_tabs") or []),
            response_history=[ResponseHistoryItem.from_dict(d) for d in data.get("response_history") or []],
        )


def load_state(key: str | None = None) -> AppState:
    """Load the state saved for a workspace (the current directory by default)."""
    data = load_cwd_data(STATE_PATH, key)
    if not isinstance(data, dict):
        return AppState()
    return AppState.from_dict(data)


def save_state(state: AppState, key: str | None = None) -> None:
    if not save_cwd_data(STATE_PATH, state.to_dict(), key):
        logger.error(f"Error saving state to {STATE_PATH}")


def setup_logging(console_level: int | None = None) -> Path:
    """Configure application logging to a rotating file, and optionally stderr."""
    log_dir = APP_DATA_DIR / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "chatpatch.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers to avoid duplicates on repeated setup
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)

    file_handler = RotatingFileHandler(log_file, maxBytes=1024*1024*5, backupCount=3, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root_logger.addHandler(file_handler)

    if console_level is not None:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(console_level)
        console.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(console)

    return log_file
