import io
import pytest
import sys

# Need to import these to patch them where they are used
import cli
from application_state import load_state
from chatpatch import CheckpointManager
from chatpatch.config import config
from tests.conftest import stub_to_diff, wrap_in_code_block

REPLY = "Hello\n### Updated file: `src/a.ts`\n" + wrap_in_code_block("const x = 1", "ts") + "\n"

@pytest.fixture
def mock_sys_argv(monkeypatch):
    def _set_argv(args):
        monkeypatch.setattr(sys, 'argv', ['chatpatch'] + args)
    return _set_argv

@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep the CLI from reconfiguring the root logger during tests."""
    monkeypatch.setattr("cli.setup_logging", lambda console_level=None: None)

@pytest.fixture
def reply_file(temp_cwd):
    path = temp_cwd / "reply.md"
    path.write_text(REPLY)
    return path

def test_no_command_prints_help(mock_sys_argv, capsys):
    mock_sys_argv([])
    assert cli.run_cli() == 0
    assert "usage" in capsys.readouterr().out

def test_parse_command(mock_sys_argv, reply_file, capsys):
    mock_sys_argv(["parse", str(reply_file)])
    assert cli.run_cli() == 0
    out = capsys.readouterr().out
    assert "[text] Hello" in out
    assert "[edit] src/a.ts [whole]" in out

def test_parse_shows_delete_and_rename(mock_sys_argv, temp_cwd, capsys):
    path = temp_cwd / "reply.md"
    path.write_text("### Deleted file: `old.py`\n### Renamed file: `a.py` → `b.py`\n")
    mock_sys_argv(["parse", str(path)])
    cli.run_cli()
    out = capsys.readouterr().out
    assert "[edit] old.py [whole] (deleted)" in out
    assert "[edit] b.py [whole] (renamed) from a.py" in out

def test_apply_yes_writes_files(mock_sys_argv, reply_file, temp_cwd, capsys):
    mock_sys_argv(["apply", str(reply_file), "--yes", "--no-checkpoint"])
    assert cli.run_cli() == 0
    assert (temp_cwd / "src" / "a.ts").read_text() == "const x = 1\n"
    out = capsys.readouterr().out
    assert "src/a.ts: create +1 -0" in out
    assert "Created: src/a.ts" in out

    history = load_state(str(temp_cwd)).response_history
    assert history[0].response == REPLY
    assert history[0].files[0]["status"] == "accepted"

def test_apply_dry_run(mock_sys_argv, reply_file, temp_cwd, capsys):
    mock_sys_argv(["apply", str(reply_file), "--dry-run"])
    assert cli.run_cli() == 0
    assert not (temp_cwd / "src" / "a.ts").exists()
    assert "Dry run completed" in capsys.readouterr().out

def test_apply_from_stdin_with_reject(mock_sys_argv, temp_cwd, monkeypatch, capsys):
    reply = ("### Updated file: `a.py`\n" + wrap_in_code_block("a = 1", "python") + "\n"
             "### Updated file: `b.py`\n" + wrap_in_code_block("b = 2", "python"))
    monkeypatch.setattr(sys, "stdin", io.StringIO(reply))
    mock_sys_argv(["apply", "--yes", "--reject", "b.py", "--no-checkpoint"])
    assert cli.run_cli() == 0
    assert (temp_cwd / "a.py").exists()
    assert not (temp_cwd / "b.py").exists()

def test_apply_interactive(mock_sys_argv, reply_file, temp_cwd, monkeypatch):
    answers = iter(["n"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(answers))
    mock_sys_argv(["apply", str(reply_file), "--no-checkpoint"])
    assert cli.run_cli() == 0
    assert not (temp_cwd / "src" / "a.ts").exists()

def test_apply_search_replace(mock_sys_argv, temp_cwd):
    (temp_cwd / "calc.py").write_text("x = 1\ny = 2\n")
    body = stub_to_diff("[SEARCH]\nx = 1\n[REPLACE]\nx = 5\n[END]")
    (temp_cwd / "reply.md").write_text("### Updated file: `calc.py`\n" + wrap_in_code_block(body, "python"))
    mock_sys_argv(["apply", "reply.md", "--yes", "--no-checkpoint"])
    assert cli.run_cli() == 0
    assert (temp_cwd / "calc.py").read_text() == "x = 5\ny = 2\n"

def test_apply_without_edits(mock_sys_argv, temp_cwd, capsys):
    (temp_cwd / "reply.md").write_text("Just an explanation.")
    mock_sys_argv(["apply", "reply.md", "--yes"])
    assert cli.run_cli() == 1
    assert "No file edits" in capsys.readouterr().err

def test_apply_checkpoint_then_restore(mock_sys_argv, reply_file, temp_cwd, capsys):
    mock_sys_argv(["apply", str(reply_file), "--yes"])
    assert cli.run_cli() == 0
    assert (temp_cwd / "src" / "a.ts").exists()

    checkpoints = CheckpointManager(cli.parse_roots(None)).list()
    assert checkpoints[0].title == "Applied changes"

    mock_sys_argv(["checkpoints"])
    cli.run_cli()
    assert "Applied changes" in capsys.readouterr().out

    mock_sys_argv(["restore", str(checkpoints[0].timestamp)])
    assert cli.run_cli() == 0
    assert not (temp_cwd / "src" / "a.ts").exists()
    assert reply_file.exists()

    mock_sys_argv(["revert-restore"])
    assert cli.run_cli() == 0
    assert (temp_cwd / "src" / "a.ts").exists()

def test_checkpoint_star_prune_clear(mock_sys_argv, temp_cwd, capsys):
    mock_sys_argv(["checkpoint", "Manual", "-d", "before refactor"])
    assert cli.run_cli() == 0
    out = capsys.readouterr().out
    assert "Manual - before refactor" in out
    timestamp = CheckpointManager(cli.parse_roots(None)).list()[0].timestamp

    mock_sys_argv(["star", str(timestamp)])
    assert cli.run_cli() == 0
    assert CheckpointManager(cli.parse_roots(None)).get(timestamp).is_starred

    mock_sys_argv(["prune", "--hours", "1"])
    assert cli.run_cli() == 0
    assert "Pruned 0 checkpoint(s)" in capsys.readouterr().out

    mock_sys_argv(["clear-checkpoints"])
    assert cli.run_cli() == 0
    assert "Deleted 1 checkpoint(s)" in capsys.readouterr().out

def test_checkpoints_empty(mock_sys_argv, temp_cwd, capsys):
    mock_sys_argv(["checkpoints"])
    assert cli.run_cli() == 0
    assert "No checkpoints available" in capsys.readouterr().out

def test_restore_unknown_checkpoint(mock_sys_argv, temp_cwd, capsys):
    mock_sys_argv(["restore", "12345"])
    assert cli.run_cli() == 1
    assert "No checkpoint with timestamp 12345" in capsys.readouterr().err

def test_context_commands(mock_sys_argv, temp_cwd, capsys):
    (temp_cwd / "src").mkdir()
    (temp_cwd / "src" / "a.py").write_text("a")
    (temp_cwd / "src" / "b.py").write_text("b")

    mock_sys_argv(["add", "src/*.py", "!src/b.py"])
    assert cli.run_cli() == 0
    assert "Added: src/*.py" in capsys.readouterr().out

    mock_sys_argv(["state"])
    cli.run_cli()
    out = capsys.readouterr().out
    assert "2 entries, 1 files" in out
    assert "!src/b.py" in out

    mock_sys_argv(["remove", "!src/b.py"])
    cli.run_cli()
    assert "Removed: !src/b.py" in capsys.readouterr().out

    mock_sys_argv(["clear"])
    cli.run_cli()
    mock_sys_argv(["state"])
    cli.run_cli()
    assert "No files in saved state" in capsys.readouterr().out

def test_multiple_roots(mock_sys_argv, temp_cwd):
    (temp_cwd / "web").mkdir()
    (temp_cwd / "api").mkdir()
    (temp_cwd / "reply.md").write_text("### Updated file: `api:main.py`\n" + wrap_in_code_block("x = 1", "python"))
    mock_sys_argv(["apply", "reply.md", "--yes", "--no-checkpoint", "--root", "web=web", "--root", "api=api"])
    assert cli.run_cli() == 0
    assert (temp_cwd / "api" / "main.py").exists()
    assert not (temp_cwd / "web" / "main.py").exists()

def test_config_lifespan(mock_sys_argv, monkeypatch, capsys):
    monkeypatch.setattr(config, "checkpoint_lifespan_hours", config.checkpoint_lifespan_hours)
    mock_sys_argv(["config", "--lifespan", "12"])
    assert cli.run_cli() == 0
    assert config.checkpoint_lifespan_hours == 12
    assert "12.0 hours" in capsys.readouterr().out

    mock_sys_argv(["config", "--lifespan", "-1"])
    assert cli.run_cli() == 1

def test_config_path(mock_sys_argv, capsys):
    mock_sys_argv(["config", "--path"])
    assert cli.run_cli() == 0
    assert capsys.readouterr().out.strip()

def test_config_settings(mock_sys_argv, monkeypatch, mock_app_data, capsys):
    for attr in ("checkpoints_enabled", "default_ambiguous_mode", "diff_fuzzy_max_bad_lines", "git_timeout"):
        monkeypatch.setattr(config, attr, getattr(config, attr))
    mock_sys_argv(["config", "--checkpoints", "off", "--ambiguous-mode", "fail",
                   "--fuzzy-bad-lines", "0", "--git-timeout", "5"])
    assert cli.run_cli() == 0
    assert config.checkpoints_enabled is False
    assert config.default_ambiguous_mode == "fail"
    assert config.diff_fuzzy_max_bad_lines == 0
    assert config.git_timeout == 5
    assert '"default_ambiguous_mode": "fail"' in (mock_app_data / "settings.json").read_text()

    capsys.readouterr()
    mock_sys_argv(["config"])
    cli.run_cli()
    assert "checkpoints_enabled = False" in capsys.readouterr().out

def test_config_rejects_bad_threshold(mock_sys_argv, capsys):
    mock_sys_argv(["config", "--fuzzy-threshold", "1.5"])
    assert cli.run_cli() == 1
    assert "Fuzzy threshold" in capsys.readouterr().err
