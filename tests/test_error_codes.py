from __future__ import annotations

import pytest

from safecrate.errors import (
    AlreadyRunningError,
    BuildSourceError,
    ConfigurationMismatchError,
    ExitCode,
    InvalidPathError,
    NoSessionError,
    NotFoundError,
    NotInitializedError,
    RuntimeUnavailableError,
    SafecrateError,
    user_facing_error,
)
from safecrate.retry import RecoverableError


def test_exit_codes_are_deterministic() -> None:
    assert int(ExitCode.SUCCESS) == 0
    assert int(ExitCode.INVALID_ARGS) == 2
    assert int(ExitCode.NOT_INITIALIZED) == 6
    assert int(ExitCode.CONFIGURATION_MISMATCH) == 9
    assert int(ExitCode.INTERRUPTED) == 130
    assert len({int(code) for code in ExitCode}) == len(ExitCode)


@pytest.mark.parametrize(
    ("error_type", "code"),
    [
        (InvalidPathError, ExitCode.INVALID_PATH),
        (NotInitializedError, ExitCode.NOT_INITIALIZED),
        (NoSessionError, ExitCode.NO_SESSION),
        (AlreadyRunningError, ExitCode.ALREADY_RUNNING),
        (ConfigurationMismatchError, ExitCode.CONFIGURATION_MISMATCH),
        (BuildSourceError, ExitCode.BUILD_SOURCE_ERROR),
        (RuntimeUnavailableError, ExitCode.RUNTIME_UNAVAILABLE),
        (NotFoundError, ExitCode.NOT_FOUND),
    ],
)
def test_each_error_kind_carries_its_exit_code(error_type: type[SafecrateError], code: ExitCode) -> None:
    error = error_type("boom")
    assert error.code == code
    assert isinstance(error, SafecrateError)


def test_error_string_contains_hint() -> None:
    err = SafecrateError("docker not found", hint="Install docker")
    assert str(err) == "docker not found Hint: Install docker"
    assert str(SafecrateError("plain")) == "plain"


def test_context_lists_only_populated_fields() -> None:
    err = NoSessionError("gone", identity="safecrate-p-abc", transition="resume")
    assert err.context() == {"identity": "safecrate-p-abc", "transition": "resume"}


def test_only_unavailable_runtime_is_recoverable() -> None:
    assert isinstance(RuntimeUnavailableError("down"), RecoverableError)
    assert not isinstance(NotFoundError("missing"), RecoverableError)


def test_user_facing_error_template() -> None:
    text = user_facing_error("Sandbox not initialized.", hint="Run safecrate init")
    assert text == "Error: Sandbox not initialized. Next step: Run safecrate init"
    assert user_facing_error("Sandbox missing") == "Error: Sandbox missing."
