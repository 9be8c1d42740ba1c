from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

PASSWORD_ENV = "SIPLOADTRACE_SIP_PASSWORD"


class SipSettings(BaseModel):
    sip_domain: str
    username: str
    password: str = ""
    external_domain: str
    call_count: int = Field(default=100, ge=1)
    call_delay_ms: int = Field(default=5000, ge=0)

    @field_validator("sip_domain", "external_domain", "username", mode="before")
    @classmethod
    def require_text(cls, value: object) -> str:
        text = "" if value is None else str(value).strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("password", mode="before")
    @classmethod
    def password_as_text(cls, value: object) -> str:
        return "" if value is None else str(value)

    @property
    def destination_uri(self) -> str:
        return f"sip:{self.external_domain}"

    @property
    def from_uri(self) -> str:
        return f"sip:{self.username}@{self.sip_domain}"


class LogSettings(BaseModel):
    log_directory: Path = Path("logs")

    @field_validator("log_directory", mode="before")
    @classmethod
    def normalize_log_directory(cls, value: object) -> Path:
        if value is None:
            return Path("logs")
        text = str(value).strip()
        if not text:
            return Path("logs")
        return Path(text).expanduser()


class RunnerSettings(BaseModel):
    resolve_timeout_seconds: Optional[float] = Field(default=5.0, gt=0)
    call_timeout_seconds: Optional[float] = Field(default=60.0, gt=0)
    drain_timeout_seconds: Optional[float] = Field(default=2.0, ge=0)
    event_queue_size: int = Field(default=10000, ge=1)


class AppConfig(BaseModel):
    sip: SipSettings
    logs: LogSettings = Field(default_factory=LogSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)


def load_config(config_path: Path) -> AppConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    password = os.environ.get(PASSWORD_ENV)
    if password and isinstance(parsed.get("sip"), dict):
        parsed["sip"]["password"] = password

    try:
        cfg = AppConfig.model_validate(parsed)
        LOGGER.info(
            "Config loaded sip_domain=%s external_domain=%s call_count=%s",
            cfg.sip.sip_domain,
            cfg.sip.external_domain,
            cfg.sip.call_count,
            extra={"category": "CONFIG"},
        )
        return cfg
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
