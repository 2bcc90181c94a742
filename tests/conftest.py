import pytest
import shutil
import subprocess
import tempfile
import os
import stat
from pathlib import Path
from unittest.mock import patch

from chatpatch.gitops import is_git_installed
from chatpatch.models import WorkspaceRoot

# Helper for Windows permission removal
def remove_readonly(func, path, _):
    os.chmod(path, stat.S_IWRITE)
    func(path)

@pytest.fixture
def temp_cwd():
    """Create a temporary directory and change CWD to it."""
    orig_cwd = os.getcwd()
    temp_dir = tempfile.mkdtemp()
    os.chdir(temp_dir)
    yield Path(temp_dir)
    os.chdir(orig_cwd)
    shutil.rmtree(temp_dir, onerror=remove_readonly)

@pytest.fixture(autouse=True)
def mock_app_data(tmp_path):
    """Redirect all AppData writes to a temp directory."""
    temp_app_data = tmp_path / "chatpatch_test_appdata"
    temp_app_data.mkdir(parents=True, exist_ok=True)

    with patch("chatpatch.config.APP_DATA_DIR", temp_app_data), \
         patch("chatpatch.config.SETTINGS_PATH", temp_app_data / "settings.json"), \
         patch("chatpatch.config.CHECKPOINTS_DIR", temp_app_data / "checkpoints"), \
         patch("chatpatch.checkpoints.CHECKPOINTS_DIR", temp_app_data / "checkpoints"), \
         patch("chatpatch.config._settings", {}), \
         patch("application_state.APP_DATA_DIR", temp_app_data), \
         patch("application_state.STATE_PATH", str(temp_app_data / "state.json")):
         yield temp_app_data

@pytest.fixture
def single_root(temp_cwd):
    return [WorkspaceRoot("proj", str(temp_cwd))]

@pytest.fixture
def two_roots(temp_cwd):
    (temp_cwd / "A").mkdir()
    (temp_cwd / "B").mkdir()
    return [WorkspaceRoot("A", str(temp_cwd / "A")), WorkspaceRoot("B", str(temp_cwd / "B"))]

def init_git_repo(path: Path) -> Path:
    subprocess.run(["git", "init", "-q"], cwd=path, check=True)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=path, check=True)
    subprocess.run(["git", "config", "user.name", "Test User"], cwd=path, check=True)
    subprocess.run(["git", "config", "commit.gpgsign", "false"], cwd=path, check=True)
    (path / "main.py").write_text("print('init')\n")
    subprocess.run(["git", "add", "."], cwd=path, check=True)
    subprocess.run(["git", "commit", "-q", "-m", "Initial"], cwd=path, check=True)
    return path

@pytest.fixture
def git_repo(temp_cwd):
    if not is_git_installed():
        pytest.skip("Git not installed")
    return init_git_repo(temp_cwd)

def stub_to_diff(text: str) -> str:
    """
    Convert a safe stub format to the search/replace markers understood by the parser.

    This keeps literal marker lines out of the test sources, so the tool can
    be pointed at its own repository.

    Stub format:
    [SEARCH]
    code
    [REPLACE]
    code
    [END]
    """

    text = text.strip()

    text = text.replace("[SEARCH]", "<<<<<<< SEARCH")
    text = text.replace("[REPLACE]", "=======")
    text = text.replace("[END]", ">>>>>>> REPLACE")
    return text

def wrap_in_code_block(content: str, info: str = "") -> str:
    """Wrap content in markdown code block."""
    return f"```{info}\n{content}\n```"
