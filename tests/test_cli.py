from pathlib import Path

import pytest
from click.testing import CliRunner

from siploadtrace.cli import main


@pytest.fixture(autouse=True)
def in_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    # setup_logging() writes logs/app.log relative to the working directory.
    monkeypatch.chdir(tmp_path)


def test_resolve_literal_destination() -> None:
    result = CliRunner().invoke(main, ["resolve", "sip:203.0.113.1:5060"])
    assert result.exit_code == 0, result.output
    # Log lines may share the captured output; the address is the last line.
    assert result.output.strip().splitlines()[-1] == "203.0.113.1"


def test_run_reports_missing_config(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["run", "--config", str(tmp_path / "nope.yaml"), "--placer", "os.path:basename"])
    assert result.exit_code != 0
    assert "Config file not found" in result.output


def test_run_places_calls_with_placer(tmp_path: Path) -> None:
    config_file = tmp_path / "siploadtrace.yaml"
    config_file.write_text(
        """
sip:
  sip_domain: pbx.example.com
  username: alice
  external_domain: 203.0.113.1
  call_count: 2
  call_delay_ms: 0
""".strip(),
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        main,
        ["run", "--config", str(config_file), "--placer", "os.path:basename", "--out-dir", str(tmp_path / "out")],
    )

    assert result.exit_code == 0, result.output
    assert "attempted=2" in result.output
    csv_files = list((tmp_path / "out").glob("call_ips_*.csv"))
    assert len(csv_files) == 1
    assert len(csv_files[0].read_text(encoding="utf-8").splitlines()) == 3


def test_run_writes_app_log_under_configured_directory(tmp_path: Path) -> None:
    config_file = tmp_path / "siploadtrace.yaml"
    config_file.write_text(
        """
sip:
  sip_domain: pbx.example.com
  username: alice
  external_domain: 203.0.113.1
  call_count: 1
  call_delay_ms: 0
logs:
  log_directory: {log_dir}
""".strip().format(log_dir=(tmp_path / "run-logs").as_posix()),
        encoding="utf-8",
    )

    result = CliRunner().invoke(main, ["run", "--config", str(config_file), "--placer", "os.path:basename"])

    assert result.exit_code == 0, result.output
    app_log = tmp_path / "run-logs" / "app.log"
    assert app_log.exists()
    assert "CLI run command" in app_log.read_text(encoding="utf-8")


def test_run_rejects_non_positive_call_count(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["run", "--placer", "os.path:basename", "--calls", "0"])
    assert result.exit_code != 0
    assert "--calls" in result.output
