"""Translate session intent into runtime-facing container and image specs."""

from __future__ import annotations

import logging as py_logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from safecrate.config import DEFAULT_COMMAND, DEFAULT_WORKSPACE_PATH
from safecrate.errors import BuildSourceError, ExitCode, InvalidPathError, SafecrateError
from safecrate.identity import ProjectIdentity

logger = py_logging.getLogger(__name__)

NETWORK_BRIDGE = "bridge"
NETWORK_NONE = "none"

LABEL_HOST_PATH = "safecrate.host_path"
LABEL_NETWORK = "safecrate.network"
LABEL_KEEP_ALIVE = "safecrate.keep_alive"

TEMPLATE_NAME = "Dockerfile.template"


@dataclass(frozen=True)
class DefaultBuildSource:
    kind: Literal["default"] = "default"


@dataclass(frozen=True)
class CustomBuildSource:
    path: Path
    kind: Literal["custom"] = "custom"


BuildSource = Annotated[
    Union[DefaultBuildSource, CustomBuildSource],
    Field(discriminator="kind"),
]


class SessionSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_path: Path
    workspace_path: str = DEFAULT_WORKSPACE_PATH
    network_enabled: bool = True
    command: tuple[str, ...] | None = None
    build_source: BuildSource = Field(default_factory=DefaultBuildSource)
    keep_alive: bool = False

    @field_validator("command")
    @classmethod
    def _validate_command(cls, value: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if value is None:
            return None
        if not value or any(not item for item in value):
            raise ValueError("command must be a non-empty argument vector")
        return value


@dataclass(frozen=True)
class Mount:
    source: Path
    target: str
    read_only: bool = False


@dataclass(frozen=True)
class RuntimeSpec:
    image: str
    container_name: str
    mount: Mount
    network_mode: str
    workdir: str
    command: tuple[str, ...]
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def mounts(self) -> tuple[Mount, ...]:
        return (self.mount,)

    @property
    def network_isolated(self) -> bool:
        return self.network_mode == NETWORK_NONE


@dataclass(frozen=True)
class ImageBuildSpec:
    tag: str
    dockerfile: Path | None = None
    context_dir: Path | None = None
    dockerfile_content: str | None = None

    @property
    def uses_template(self) -> bool:
        return self.dockerfile_content is not None


def network_mode(enabled: bool) -> str:
    return NETWORK_BRIDGE if enabled else NETWORK_NONE


def parse_command(text: str) -> tuple[str, ...]:
    """Split a ``--cmd`` string into an argument vector without a shell."""
    try:
        argv = tuple(shlex.split(text))
    except ValueError as exc:
        raise SafecrateError(
            f"Cannot parse command: {text!r}",
            code=ExitCode.INVALID_ARGS,
            hint=str(exc),
        ) from exc
    if not argv:
        raise SafecrateError(
            "Command must not be empty",
            code=ExitCode.INVALID_ARGS,
            hint="Pass --cmd with at least a program name.",
        )
    return argv


def build_runtime_spec(
    identity: ProjectIdentity,
    spec: SessionSpec,
    *,
    default_command: tuple[str, ...] = DEFAULT_COMMAND,
) -> RuntimeSpec:
    if Path(spec.host_path) != identity.host_path:
        raise InvalidPathError(
            f"Session path {spec.host_path} does not match identity {identity.host_path}",
            hint="Resolve the project directory before building a session.",
            identity=identity.name,
        )
    workdir = str(PurePosixPath(spec.workspace_path))
    command = spec.command if spec.command is not None else tuple(default_command)
    mode = network_mode(spec.network_enabled)
    runtime_spec = RuntimeSpec(
        image=identity.image_tag,
        container_name=identity.container_name,
        mount=Mount(source=identity.host_path, target=workdir),
        network_mode=mode,
        workdir=workdir,
        command=command,
        labels=MappingProxyType(
            {
                LABEL_HOST_PATH: str(identity.host_path),
                LABEL_NETWORK: mode,
                LABEL_KEEP_ALIVE: "true" if spec.keep_alive else "false",
            }
        ),
    )
    logger.debug(
        "Built runtime spec container=%s network=%s command=%s",
        runtime_spec.container_name,
        runtime_spec.network_mode,
        runtime_spec.command,
    )
    return runtime_spec


def load_default_template() -> str:
    template = resources.files("safecrate").joinpath("templates").joinpath(TEMPLATE_NAME)
    return template.read_text(encoding="utf-8")


def _validate_build_file(path: Path) -> Path:
    candidate = path.expanduser()
    try:
        resolved = candidate.resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise BuildSourceError(
            f"Build file not found: {candidate}",
            hint="Pass --dockerfile with an existing Dockerfile.",
        ) from exc
    if not resolved.is_file():
        raise BuildSourceError(
            f"Build file is not a regular file: {resolved}",
            hint="Pass --dockerfile with a file, not a directory.",
        )
    if not os.access(resolved, os.R_OK):
        raise BuildSourceError(
            f"Build file is not readable: {resolved}",
            hint="Fix the file permissions and retry.",
        )
    return resolved


def build_image_spec(
    identity: ProjectIdentity,
    source: DefaultBuildSource | CustomBuildSource,
) -> ImageBuildSpec:
    if isinstance(source, CustomBuildSource):
        dockerfile = _validate_build_file(Path(source.path))
        logger.debug("Using custom build file %s for %s", dockerfile, identity.name)
        return ImageBuildSpec(
            tag=identity.image_tag,
            dockerfile=dockerfile,
            context_dir=dockerfile.parent,
        )
    return ImageBuildSpec(tag=identity.image_tag, dockerfile_content=load_default_template())
