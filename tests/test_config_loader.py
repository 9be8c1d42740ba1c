from pathlib import Path

import pytest

from siploadtrace.config_loader import PASSWORD_ENV, load_config


def _write(tmp_path: Path, text: str) -> Path:
    config_file = tmp_path / "siploadtrace.yaml"
    config_file.write_text(text.strip(), encoding="utf-8")
    return config_file


def test_load_config_success(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(PASSWORD_ENV, raising=False)
    config_file = _write(
        tmp_path,
        """
sip:
  sip_domain: pbx.example.com
  username: 1001
  password: secret
  external_domain: sip.example.com
  call_count: 3
  call_delay_ms: 0
logs:
  log_directory: out/logs
""",
    )

    config = load_config(config_file)
    assert config.sip.username == "1001"
    assert config.sip.call_count == 3
    assert config.sip.destination_uri == "sip:sip.example.com"
    assert config.sip.from_uri == "sip:1001@pbx.example.com"
    assert config.logs.log_directory == Path("out/logs")
    assert config.runner.call_timeout_seconds == 60.0
    assert config.runner.event_queue_size == 10000


def test_load_config_defaults(tmp_path: Path) -> None:
    config_file = _write(
        tmp_path,
        """
sip:
  sip_domain: pbx.example.com
  username: alice
  external_domain: sip.example.com
""",
    )

    config = load_config(config_file)
    assert config.sip.call_count == 100
    assert config.sip.call_delay_ms == 5000
    assert config.logs.log_directory == Path("logs")


def test_password_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(PASSWORD_ENV, "from-env")
    config_file = _write(
        tmp_path,
        """
sip:
  sip_domain: pbx.example.com
  username: alice
  password: from-file
  external_domain: sip.example.com
""",
    )

    assert load_config(config_file).sip.password == "from-env"


def test_load_config_rejects_invalid_call_count(tmp_path: Path) -> None:
    config_file = _write(
        tmp_path,
        """
sip:
  sip_domain: pbx.example.com
  username: alice
  external_domain: sip.example.com
  call_count: 0
""",
    )

    with pytest.raises(ValueError):
        load_config(config_file)


def test_load_config_rejects_missing_section_and_bad_yaml(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, "logs:\n  log_directory: logs"))
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, "sip: [unclosed"))
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, "- just\n- a list"))
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.yaml")
