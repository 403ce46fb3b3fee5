from pathlib import Path

import pytest
from click.testing import CliRunner

from shadowgate.cli import cli
from shadowgate.server.core import STORE_FILE
from shadowgate.server.persistence import DataPersistence, JsonFileStore


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("SHADOWGATE_DATA_DIR", str(tmp_path))
    return tmp_path


def _persistence(data_dir: Path) -> DataPersistence:
    return DataPersistence(JsonFileStore(data_dir / STORE_FILE))


def test_cli_help():
    """Test CLI help command."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "Usage:" in result.output
    for command in ("serve", "secret", "add-script", "issue-key"):
        assert command in result.output


def test_cli_serve_help():
    """Test serve command help."""
    runner = CliRunner()
    result = runner.invoke(cli, ["serve", "--help"])
    assert result.exit_code == 0
    assert "Start the delivery server" in result.output


def test_cli_secret():
    runner = CliRunner()
    result = runner.invoke(cli, ["secret", "--length", "40"])
    assert result.exit_code == 0
    assert len(result.output.strip()) == 40  # noqa: PLR2004

    too_short = runner.invoke(cli, ["secret", "--length", "8"])
    assert too_short.exit_code != 0


def test_cli_add_script_and_issue_key(tmp_path: Path, data_dir: Path) -> None:
    source = tmp_path / "payload.lua"
    source.write_text('print("hi")')
    runner = CliRunner()

    added = runner.invoke(
        cli,
        [
            "add-script",
            "Demo",
            str(source),
            "--script-id",
            "demo",
            "--no-hwid-lock",
            "--max-warnings",
            "5",
            "--data-dir",
            str(data_dir),
        ],
    )
    assert added.exit_code == 0, added.output
    assert added.output.strip() == "demo"

    issued = runner.invoke(cli, ["issue-key", "demo", "--days", "7"])
    assert issued.exit_code == 0, issued.output
    key_value = issued.output.strip()

    persistence = _persistence(data_dir)
    script = persistence.get_script("demo")
    assert script is not None
    assert script.content == 'print("hi")'
    assert script.flags.hwid_lock is False
    assert script.flags.max_warnings == 5  # noqa: PLR2004
    key = persistence.get_key("demo", key_value)
    assert key is not None
    assert key.key_days == 7  # noqa: PLR2004


def test_cli_issue_key_errors(tmp_path: Path) -> None:
    runner = CliRunner()
    unknown = runner.invoke(cli, ["issue-key", "missing"])
    assert unknown.exit_code != 0
    assert "Unknown script: missing" in unknown.output

    source = tmp_path / "payload.lua"
    source.write_text("return 1")
    runner.invoke(cli, ["add-script", "Demo", str(source), "--script-id", "demo"])
    both = runner.invoke(cli, ["issue-key", "demo", "--days", "1", "--expires-at", "10"])
    assert both.exit_code != 0
    assert "not both" in both.output
