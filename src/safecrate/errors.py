"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from safecrate.retry import RecoverableError


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    INVALID_PATH = 5
    NOT_INITIALIZED = 6
    NO_SESSION = 7
    ALREADY_RUNNING = 8
    CONFIGURATION_MISMATCH = 9
    BUILD_SOURCE_ERROR = 10
    RUNTIME_UNAVAILABLE = 11
    NOT_FOUND = 12
    INTERRUPTED = 130


@dataclass
class SafecrateError(Exception):
    message: str
    code: ExitCode = ExitCode.RUNTIME_ERROR
    hint: str = ""
    identity: str = ""
    transition: str = ""
    observed: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message

    def context(self) -> dict[str, str]:
        values = {
            "identity": self.identity,
            "transition": self.transition,
            "observed": self.observed,
        }
        return {key: value for key, value in values.items() if value}


@dataclass
class InvalidPathError(SafecrateError):
    code: ExitCode = ExitCode.INVALID_PATH


@dataclass
class NotInitializedError(SafecrateError):
    code: ExitCode = ExitCode.NOT_INITIALIZED


@dataclass
class NoSessionError(SafecrateError):
    code: ExitCode = ExitCode.NO_SESSION


@dataclass
class AlreadyRunningError(SafecrateError):
    code: ExitCode = ExitCode.ALREADY_RUNNING


@dataclass
class ConfigurationMismatchError(SafecrateError):
    code: ExitCode = ExitCode.CONFIGURATION_MISMATCH


@dataclass
class BuildSourceError(SafecrateError):
    code: ExitCode = ExitCode.BUILD_SOURCE_ERROR


@dataclass
class RuntimeUnavailableError(SafecrateError, RecoverableError):
    """Docker daemon or binary could not be reached; safe to retry."""

    code: ExitCode = ExitCode.RUNTIME_UNAVAILABLE


@dataclass
class NotFoundError(SafecrateError):
    code: ExitCode = ExitCode.NOT_FOUND


def user_facing_error(message: str, *, hint: str = "") -> str:
    message = message.rstrip(".")
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
