"""Configuration and constants for chatpatch."""
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

# Directories never copied into file-level checkpoints
DEFAULT_HIDDEN = {
    ".git", ".svn", ".hg", ".DS_Store", "Thumbs.db",
    "__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox",
    ".vscode", ".idea", ".vs",
    "venv", ".venv", "env", "node_modules", "site-packages", # Python/Node
    "dist", "build", "target", "out", "bin", "obj", # Build artifacts
    "vendor", "coverage"
}

AMBIGUOUS_MODES = ("replace_all", "fail", "ignore")

logger = logging.getLogger(__name__)

def get_app_data_dir() -> Path:
    """Get the application data directory for the current platform."""
    override = os.getenv("CHATPATCH_HOME")
    if override:
        return Path(override)
    home = Path.home()
    if sys.platform == "win32":
        return Path(os.getenv("APPDATA") or home / "AppData" / "Roaming") / "chatpatch"
    elif sys.platform == "darwin":
        return home / "Library" / "Application Support" / "chatpatch"
    return Path(os.getenv("XDG_CONFIG_HOME") or home / ".config") / "chatpatch"

APP_DATA_DIR = get_app_data_dir()
CHECKPOINTS_DIR = APP_DATA_DIR / "checkpoints"

SETTINGS_FILENAME = "settings.json"
SETTINGS_PATH = APP_DATA_DIR / SETTINGS_FILENAME

def load_json_file(path: Path | str, default: Any = None) -> Any:
    """Load a JSON file safely."""
    try:
        p = Path(path)
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to load JSON {path}: {e}")
    return default

def save_json_file(path: Path | str, data: Any, indent: int = 2) -> bool:
    """Save data to a JSON file safely."""
    try:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
        os.replace(tmp, p)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save JSON {path}: {e}")
        return False

def _load_settings() -> dict:
    data = load_json_file(SETTINGS_PATH)
    return data if isinstance(data, dict) else {}

def _save_settings(settings: dict) -> None:
    save_json_file(SETTINGS_PATH, settings)

_settings = _load_settings()

class ChatPatchConfig:
    """Runtime settings, persisted to settings.json on every change."""

    def __init__(self):
        self.checkpoints_enabled = _settings.get("checkpoints_enabled", True)
        self.checkpoint_lifespan_hours = _settings.get("checkpoint_lifespan_hours", 48)
        self.max_strip_iterations = _settings.get("max_strip_iterations", 64)
        self.diff_fuzzy_lines_threshold = _settings.get("diff_fuzzy_lines_threshold", 0.95)
        self.diff_fuzzy_max_bad_lines = _settings.get("diff_fuzzy_max_bad_lines", 1)
        self.default_ambiguous_mode = _settings.get("default_ambiguous_mode", "replace_all")
        self.git_timeout = _settings.get("git_timeout", 30)

    def set_checkpoints_enabled(self, enabled: bool) -> None:
        self.checkpoints_enabled = enabled
        _settings["checkpoints_enabled"] = enabled
        _save_settings(_settings)

    def set_checkpoint_lifespan_hours(self, hours: float) -> None:
        if hours <= 0:
            raise ValueError("Checkpoint lifespan must be positive")
        self.checkpoint_lifespan_hours = hours
        _settings["checkpoint_lifespan_hours"] = hours
        _save_settings(_settings)

    def set_max_strip_iterations(self, count: int) -> None:
        self.max_strip_iterations = count
        _settings["max_strip_iterations"] = count
        _save_settings(_settings)

    def set_diff_fuzzy_lines_threshold(self, threshold: float) -> None:
        self.diff_fuzzy_lines_threshold = threshold
        _settings["diff_fuzzy_lines_threshold"] = threshold
        _save_settings(_settings)

    def set_diff_fuzzy_max_bad_lines(self, count: int) -> None:
        self.diff_fuzzy_max_bad_lines = count
        _settings["diff_fuzzy_max_bad_lines"] = count
        _save_settings(_settings)

    def set_default_ambiguous_mode(self, mode: str) -> None:
        if mode not in AMBIGUOUS_MODES:
            raise ValueError(f"Unknown ambiguous mode: {mode}")
        self.default_ambiguous_mode = mode
        _settings["default_ambiguous_mode"] = mode
        _save_settings(_settings)

    def set_git_timeout(self, seconds: float) -> None:
        self.git_timeout = seconds
        _settings["git_timeout"] = seconds
        _save_settings(_settings)

config = ChatPatchConfig()
