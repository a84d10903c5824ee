"""
Smoke tests for the datapump CLI.
"""

import json
from pathlib import Path

from typer.testing import CliRunner

from datapump import __version__
from datapump.cli.main import app
from datapump.core.errors import ExitCode

runner = CliRunner()


class TestTopLevel:
    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_drivers(self):
        result = runner.invoke(app, ["drivers"])

        assert result.exit_code == 0
        for backend_id in ("elasticsearch", "jsonl", "noop", "sql"):
            assert backend_id in result.output

    def test_drivers_long_lists_options(self):
        result = runner.invoke(app, ["drivers", "--long"])

        assert result.exit_code == 0
        assert "source.file" in result.output


class TestRun:
    def test_jsonl_copy(self, jsonl_source: Path, tmp_path: Path):
        out = tmp_path / "copy.jsonl"

        result = runner.invoke(
            app,
            [
                "run",
                "-s", "jsonl",
                "-t", "jsonl",
                "--set", f"source.file={jsonl_source}",
                "--set", f"target.file={out}",
                "--step", "7",
                "--no-mapping",
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Transfer Summary" in result.output
        assert len(out.read_text(encoding="utf-8").splitlines()) == 25

    def test_options_file(self, jsonl_source: Path, tmp_path: Path):
        out = tmp_path / "copy.jsonl"
        options = tmp_path / "transfer.json"
        options.write_text(
            json.dumps(
                {
                    "drivers": {"source": "jsonl", "target": "noop"},
                    "source": {"file": str(jsonl_source)},
                }
            ),
            encoding="utf-8",
        )

        result = runner.invoke(app, ["run", "--options", str(options)])

        assert result.exit_code == 0, result.output
        assert not out.exists()

    def test_missing_options_file(self, tmp_path: Path):
        result = runner.invoke(app, ["run", "--options", str(tmp_path / "missing.yaml")])

        assert result.exit_code == ExitCode.OPTIONS_FILE_MISSING

    def test_invalid_option_value(self):
        result = runner.invoke(app, ["run", "--set", "run.step=0"])

        assert result.exit_code == ExitCode.OPTIONS_INVALID

    def test_backend_option_errors(self, tmp_path: Path):
        result = runner.invoke(app, ["run", "-s", "noop", "-t", "noop"])

        assert result.exit_code == ExitCode.OPTIONS_INVALID

    def test_unknown_backend(self):
        result = runner.invoke(app, ["run", "-s", "carrier-pigeon"])

        assert result.exit_code == ExitCode.BACKEND_NOT_FOUND
