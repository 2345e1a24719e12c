"""Docker CLI adapter used by the session lifecycle manager."""

from __future__ import annotations

import json
import logging as py_logging
import subprocess
import tempfile
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol

from safecrate.errors import (
    AlreadyRunningError,
    ExitCode,
    NotFoundError,
    RuntimeUnavailableError,
    SafecrateError,
)
from safecrate.policy import ImageBuildSpec, RuntimeSpec
from safecrate.retry import RetryPolicy, run_with_retry

logger = py_logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"running", "restarting", "paused"})
PAUSED_STATUS = "paused"

_UNAVAILABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "permission denied while trying to connect",
)
_NOT_FOUND_MARKERS = ("no such container", "no such image", "no such object")
_CONFLICT_MARKERS = ("is already in use",)


class SubprocessRunner(Protocol):
    def __call__(
        self,
        args: list[str],
        *,
        capture_output: bool = False,
        text: bool = False,
        check: bool = False,
        stderr: int | None = None,
    ) -> subprocess.CompletedProcess[str]: ...


@dataclass(frozen=True)
class ContainerInfo:
    name: str
    status: str
    network_mode: str
    command: tuple[str, ...]
    mounts: tuple[tuple[str, str], ...] = ()
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def running(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def paused(self) -> bool:
        return self.status == PAUSED_STATUS


def classify_failure(action: str, stderr: str, *, target: str = "") -> SafecrateError:
    """Turn a failed docker invocation into the matching error kind."""
    detail = stderr.strip()
    lowered = detail.lower()
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return RuntimeUnavailableError(
            f"Docker is unavailable while trying to {action}",
            hint=detail or "Start the Docker daemon and retry.",
            identity=target,
        )
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return NotFoundError(
            f"Docker reports {target or 'resource'} missing while trying to {action}",
            hint=detail,
            identity=target,
        )
    if any(marker in lowered for marker in _CONFLICT_MARKERS):
        return AlreadyRunningError(
            f"Container name {target} is already taken",
            hint="Another invocation owns this session; run `safecrate resume` or `safecrate remove`.",
            identity=target,
        )
    return SafecrateError(
        f"Docker failed to {action}",
        code=ExitCode.RUNTIME_ERROR,
        hint=detail or "Inspect docker output.",
        identity=target,
    )


def _mount_arg(source: Path, target: str, read_only: bool) -> str:
    def quote(value: str) -> str:
        # --mount is parsed as CSV; quote fields containing separators.
        if "," in value or '"' in value:
            return '"' + value.replace('"', '""') + '"'
        return value

    parts = ["type=bind", quote(f"source={source}"), quote(f"target={target}")]
    if read_only:
        parts.append("readonly")
    return ",".join(parts)


def create_arguments(spec: RuntimeSpec) -> list[str]:
    args = ["create", "--interactive", "--tty", "--name", spec.container_name]
    args.extend(["--network", spec.network_mode])
    for mount in spec.mounts:
        args.extend(["--mount", _mount_arg(mount.source, mount.target, mount.read_only)])
    args.extend(["--workdir", spec.workdir])
    for key, value in sorted(spec.labels.items()):
        args.extend(["--label", f"{key}={value}"])
    args.append(spec.image)
    args.extend(spec.command)
    return args


def parse_inspect(name: str, payload: str) -> ContainerInfo:
    try:
        decoded: Any = json.loads(payload)
        data = decoded[0] if isinstance(decoded, list) else decoded
        state = data.get("State") or {}
        host_config = data.get("HostConfig") or {}
        config = data.get("Config") or {}
        mounts = tuple(
            (str(item.get("Source", "")), str(item.get("Destination", "")))
            for item in data.get("Mounts") or []
        )
        return ContainerInfo(
            name=name,
            status=str(state.get("Status", "")),
            network_mode=str(host_config.get("NetworkMode", "")),
            command=tuple(config.get("Cmd") or ()),
            mounts=mounts,
            labels=MappingProxyType(dict(config.get("Labels") or {})),
        )
    except (json.JSONDecodeError, IndexError, AttributeError, TypeError) as exc:
        raise SafecrateError(
            f"Unexpected docker inspect output for {name}",
            code=ExitCode.RUNTIME_ERROR,
            hint=str(exc),
            identity=name,
        ) from exc


class DockerClient:
    def __init__(
        self,
        binary: str = "docker",
        *,
        runner: SubprocessRunner = subprocess.run,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.binary = binary
        self.runner = runner
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def _invoke(self, args: list[str], *, action: str, target: str) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, *args]
        logger.debug("Running docker command=%s", cmd)
        try:
            result = self.runner(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise RuntimeUnavailableError(
                f"Cannot execute {self.binary} to {action}",
                hint="Is docker installed and on PATH?",
                identity=target,
            ) from exc
        if result.returncode != 0:
            error = classify_failure(action, result.stderr or "", target=target)
            logger.debug("docker %s failed target=%s error=%s", args[0], target, error)
            raise error
        return result

    def _run(self, args: list[str], *, action: str, target: str = "") -> subprocess.CompletedProcess[str]:
        return run_with_retry(
            lambda: self._invoke(args, action=action, target=target),
            policy=self.retry_policy,
            sleep=self._sleep,
        )

    def _run_interactive(self, args: list[str], *, action: str, target: str) -> int:
        cmd = [self.binary, *args]
        logger.debug("Running interactive docker command=%s", cmd)
        try:
            # Containers run with a TTY, so their output arrives on stdout and
            # stderr carries only docker client errors.
            result = self.runner(cmd, check=False, stderr=subprocess.PIPE, text=True)
        except OSError as exc:
            raise RuntimeUnavailableError(
                f"Cannot execute {self.binary} to {action}",
                hint="Is docker installed and on PATH?",
                identity=target,
            ) from exc
        errors = (result.stderr or "").strip()
        if result.returncode != 0 and errors:
            error = classify_failure(action, errors, target=target)
            logger.debug("docker %s failed target=%s error=%s", args[0], target, error)
            raise error
        if errors:
            logger.debug("docker %s stderr target=%s: %s", args[0], target, errors)
        return result.returncode

    def build_image(self, spec: ImageBuildSpec) -> str:
        logger.info("Building image %s", spec.tag)
        started = time.monotonic()
        if spec.dockerfile_content is not None:
            with tempfile.TemporaryDirectory(prefix="safecrate-build-") as tmpdir:
                dockerfile = Path(tmpdir) / "Dockerfile"
                dockerfile.write_text(spec.dockerfile_content, encoding="utf-8")
                self._run(
                    ["build", "-t", spec.tag, "-f", str(dockerfile), tmpdir],
                    action="build image",
                    target=spec.tag,
                )
        else:
            if spec.dockerfile is None or spec.context_dir is None:
                raise SafecrateError(
                    f"Incomplete build spec for {spec.tag}",
                    code=ExitCode.RUNTIME_ERROR,
                )
            self._run(
                ["build", "-t", spec.tag, "-f", str(spec.dockerfile), str(spec.context_dir)],
                action="build image",
                target=spec.tag,
            )
        logger.info("Image %s built in %.2fs", spec.tag, time.monotonic() - started)
        return spec.tag

    def image_exists(self, tag: str) -> bool:
        try:
            self._run(["image", "inspect", tag], action="inspect image", target=tag)
        except NotFoundError:
            return False
        return True

    def remove_image(self, tag: str) -> None:
        self._run(["image", "rm", tag], action="remove image", target=tag)

    def create_container(self, spec: RuntimeSpec) -> str:
        result = self._run(
            create_arguments(spec),
            action="create container",
            target=spec.container_name,
        )
        container_id = (result.stdout or "").strip()
        logger.debug("Created container name=%s id=%s", spec.container_name, container_id)
        return container_id

    def start_container(self, name: str, *, attach: bool = False) -> int:
        if attach:
            return self._run_interactive(
                ["start", "--attach", "--interactive", name],
                action="start container",
                target=name,
            )
        self._run(["start", name], action="start container", target=name)
        return 0

    def attach(self, name: str) -> int:
        return self._run_interactive(["attach", name], action="attach to container", target=name)

    def stop_container(self, name: str, *, timeout: int) -> None:
        self._run(["stop", "-t", str(timeout), name], action="stop container", target=name)

    def unpause_container(self, name: str) -> None:
        self._run(["unpause", name], action="unpause container", target=name)

    def kill_container(self, name: str) -> None:
        self._run(["kill", name], action="kill container", target=name)

    def remove_container(self, name: str, *, force: bool = False) -> None:
        args = ["rm", "-f", name] if force else ["rm", name]
        self._run(args, action="remove container", target=name)

    def inspect_container(self, name: str) -> ContainerInfo:
        result = self._run(["container", "inspect", name], action="inspect container", target=name)
        return parse_inspect(name, result.stdout or "")
