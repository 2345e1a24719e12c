"""User configuration loaded from an optional XDG TOML file."""

from __future__ import annotations

import logging as py_logging
import os
import sys
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from safecrate.retry import RetryPolicy

logger = py_logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/safecrate/config.toml").expanduser()
DEFAULT_DOCKER_BINARY = "docker"
DEFAULT_WORKSPACE_PATH = "/workspace"
DEFAULT_COMMAND = ("nvim", ".")
DEFAULT_STOP_TIMEOUT_SECONDS = 10
DOCKER_BINARY_ENV = "SAFECRATE_DOCKER"


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    docker_binary: str = DEFAULT_DOCKER_BINARY
    workspace_path: str = DEFAULT_WORKSPACE_PATH
    default_command: list[str] = Field(default_factory=lambda: list(DEFAULT_COMMAND))
    stop_timeout_seconds: int = Field(default=DEFAULT_STOP_TIMEOUT_SECONDS, ge=0, le=600)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=30.0)

    @field_validator("docker_binary")
    @classmethod
    def _validate_binary(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("docker_binary must not be empty")
        return value.strip()

    @field_validator("workspace_path")
    @classmethod
    def _validate_workspace(cls, value: str) -> str:
        path = PurePosixPath(value)
        if not path.is_absolute() or path == PurePosixPath("/"):
            raise ValueError(f"Invalid workspace path: {value}")
        return str(path)

    @field_validator("default_command")
    @classmethod
    def _validate_command(cls, value: list[str]) -> list[str]:
        if not value or any(not item for item in value):
            raise ValueError("default_command must be a non-empty argument list")
        return value

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            initial_backoff_seconds=self.retry_backoff_seconds,
        )


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()
    for name in AppConfig.model_fields:
        if name not in raw:
            continue
        try:
            setattr(cfg, name, raw[name])
        except ValueError as exc:
            logger.warning("Ignoring invalid config value %s=%r: %s", name, raw[name], exc)
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    cfg = AppConfig()
    if resolved.exists():
        try:
            with resolved.open("rb") as handle:
                raw = tomllib.load(handle)
        except (tomllib.TOMLDecodeError, OSError) as exc:
            logger.warning("Config file %s unreadable; using defaults: %s", resolved, exc)
        else:
            cfg = _sanitize(raw)
            logger.debug("Loaded config from %s", resolved)

    env_binary = os.getenv(DOCKER_BINARY_ENV, "").strip()
    if env_binary:
        cfg.docker_binary = env_binary
    return cfg
