from typer.testing import CliRunner
from planwright.cli import app
from planwright import __version__

runner = CliRunner()

def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"PLANWRIGHT v{__version__}" in result.stdout


def test_init_creates_config_and_ignores_history(tmp_path):
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0
    assert (tmp_path / ".planwright" / "config.yaml").exists()
    assert ".planwright/history.jsonl" in (tmp_path / ".gitignore").read_text()


def test_history_empty(tmp_path):
    result = runner.invoke(app, ["history", "--repo", str(tmp_path)])
    assert result.exit_code == 0
    assert "No history yet" in result.stdout
