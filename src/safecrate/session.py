"""Session lifecycle manager: init, open, resume, remove per project identity.

State is never cached. Every verb starts by observing the runtime and
derives the session state from what Docker reports, so out-of-band changes
(a manual ``docker stop`` or ``docker rm``) are picked up on the next call.
"""

from __future__ import annotations

import logging as py_logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from safecrate.config import AppConfig
from safecrate.errors import (
    ConfigurationMismatchError,
    ExitCode,
    NoSessionError,
    NotFoundError,
    NotInitializedError,
    SafecrateError,
)
from safecrate.identity import ProjectIdentity, resolve
from safecrate.policy import (
    LABEL_HOST_PATH,
    LABEL_KEEP_ALIVE,
    CustomBuildSource,
    DefaultBuildSource,
    SessionSpec,
    build_image_spec,
    build_runtime_spec,
    network_mode,
)
from safecrate.runtime import ContainerInfo, DockerClient

logger = py_logging.getLogger(__name__)


class SessionState(str, Enum):
    ABSENT = "absent"
    BUILT = "built"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass(frozen=True)
class ObservedSession:
    identity: ProjectIdentity
    image_present: bool
    container: ContainerInfo | None = None

    @property
    def state(self) -> SessionState:
        if self.container is not None:
            return SessionState.RUNNING if self.container.running else SessionState.STOPPED
        if self.image_present:
            return SessionState.BUILT
        return SessionState.ABSENT


@dataclass
class SessionResult:
    identity: ProjectIdentity
    verb: str
    previous: SessionState
    state: SessionState
    rebuilt: bool = False
    created: bool = False
    attached: bool = False
    interrupted: bool = False
    exit_code: int = 0


class SessionManager:
    def __init__(
        self,
        client: DockerClient,
        *,
        config: AppConfig | None = None,
        resolver: Callable[[str | Path], ProjectIdentity] = resolve,
    ) -> None:
        self.client = client
        self.config = config or AppConfig()
        self._resolve = resolver

    def observe(self, identity: ProjectIdentity) -> ObservedSession:
        image_present = self.client.image_exists(identity.image_tag)
        try:
            container: ContainerInfo | None = self.client.inspect_container(identity.container_name)
        except NotFoundError:
            container = None
        observed = ObservedSession(identity=identity, image_present=image_present, container=container)
        logger.debug("Observed identity=%s state=%s", identity.name, observed.state.value)
        return observed

    def status(self, host_path: str | Path) -> ObservedSession:
        return self.observe(self._resolve(host_path))

    def init(
        self,
        host_path: str | Path,
        build_source: DefaultBuildSource | CustomBuildSource | None = None,
    ) -> SessionResult:
        identity = self._resolve(host_path)
        spec = SessionSpec(
            host_path=identity.host_path,
            workspace_path=self.config.workspace_path,
            build_source=build_source or DefaultBuildSource(),
        )
        image_spec = build_image_spec(identity, spec.build_source)
        previous = self.observe(identity).state
        rebuilt = previous is not SessionState.ABSENT
        if rebuilt:
            logger.warning(
                "Rebuilding image %s in place (observed state=%s)",
                identity.image_tag,
                previous.value,
            )
        self.client.build_image(image_spec)
        current = self.observe(identity).state
        logger.info("init complete identity=%s state=%s", identity.name, current.value)
        return SessionResult(
            identity=identity,
            verb="init",
            previous=previous,
            state=current,
            rebuilt=rebuilt,
        )

    def open(
        self,
        host_path: str | Path,
        *,
        network_enabled: bool = True,
        command: tuple[str, ...] | None = None,
        keep_alive: bool = False,
    ) -> SessionResult:
        identity = self._resolve(host_path)
        observed = self.observe(identity)
        previous = observed.state

        if previous is SessionState.ABSENT:
            raise NotInitializedError(
                f"No sandbox image for {identity.host_path}",
                hint=f"Run `safecrate init {identity.host_path}` first.",
                identity=identity.name,
                transition="open",
                observed=previous.value,
            )

        if observed.container is not None:
            container = observed.container
            self._check_ownership(identity, container, transition="open")
            self._check_requested(
                identity,
                container,
                network_enabled=network_enabled,
                command=command,
                transition="open",
            )
            teardown = not keep_alive and container.labels.get(LABEL_KEEP_ALIVE) != "true"
            return self._foreground(
                identity,
                verb="open",
                previous=previous,
                attach_running=previous is SessionState.RUNNING,
                unpause=container.paused,
                teardown=teardown,
            )

        spec = SessionSpec(
            host_path=identity.host_path,
            workspace_path=self.config.workspace_path,
            network_enabled=network_enabled,
            command=command,
            keep_alive=keep_alive,
        )
        runtime_spec = build_runtime_spec(
            identity,
            spec,
            default_command=tuple(self.config.default_command),
        )
        self.client.create_container(runtime_spec)
        logger.info(
            "Created container %s network=%s keep_alive=%s",
            identity.container_name,
            runtime_spec.network_mode,
            keep_alive,
        )
        try:
            result = self._foreground(
                identity,
                verb="open",
                previous=previous,
                attach_running=False,
                teardown=not keep_alive,
            )
        except SafecrateError:
            if not keep_alive:
                self._rollback(identity)
            raise
        result.created = True
        return result

    def resume(
        self,
        host_path: str | Path,
        *,
        network_enabled: bool | None = None,
        command: tuple[str, ...] | None = None,
    ) -> SessionResult:
        identity = self._resolve(host_path)
        observed = self.observe(identity)
        previous = observed.state
        container = observed.container
        if container is None:
            raise NoSessionError(
                f"No existing container to resume for {identity.host_path}",
                hint=f"Run `safecrate open {identity.host_path} --keep-container` first.",
                identity=identity.name,
                transition="resume",
                observed=previous.value,
            )
        self._check_ownership(identity, container, transition="resume")
        self._check_requested(
            identity,
            container,
            network_enabled=network_enabled,
            command=command,
            transition="resume",
        )
        return self._foreground(
            identity,
            verb="resume",
            previous=previous,
            attach_running=previous is SessionState.RUNNING,
            unpause=container.paused,
            teardown=False,
        )

    def remove(
        self,
        host_path: str | Path,
        *,
        keep_image: bool = False,
        force: bool = False,
    ) -> SessionResult:
        identity = self._resolve(host_path)
        observed = self.observe(identity)
        previous = observed.state
        if observed.container is None and (keep_image or not observed.image_present):
            raise NoSessionError(
                f"Nothing to remove for {identity.host_path}",
                hint="The sandbox has no container"
                + ("." if keep_image else " and no image."),
                identity=identity.name,
                transition="remove",
                observed=previous.value,
            )

        if observed.container is not None:
            self._check_ownership(identity, observed.container, transition="remove")
            self._teardown(identity, force=force)

        state = SessionState.REMOVED
        if observed.image_present and not keep_image:
            try:
                self.client.remove_image(identity.image_tag)
            except NotFoundError:
                logger.debug("Image %s already gone", identity.image_tag)
            state = SessionState.ABSENT

        logger.info("remove complete identity=%s state=%s", identity.name, state.value)
        return SessionResult(identity=identity, verb="remove", previous=previous, state=state)

    def _foreground(
        self,
        identity: ProjectIdentity,
        *,
        verb: str,
        previous: SessionState,
        attach_running: bool,
        unpause: bool = False,
        teardown: bool,
    ) -> SessionResult:
        name = identity.container_name
        interrupted = False
        exit_code = 0
        if unpause:
            # docker refuses to attach to a paused container.
            logger.info("Unpausing container %s before attaching", name)
            self.client.unpause_container(name)
        try:
            if attach_running:
                logger.info("Attaching to running container %s", name)
                exit_code = self.client.attach(name)
            else:
                logger.info("Starting container %s", name)
                exit_code = self.client.start_container(name, attach=True)
        except KeyboardInterrupt:
            interrupted = True
            exit_code = int(ExitCode.INTERRUPTED)
            logger.warning("Interrupted while attached to %s", name)

        if exit_code and not interrupted:
            logger.info("Foreground command in %s exited with status %s", name, exit_code)

        if teardown:
            self._teardown(identity)
            state = SessionState.REMOVED
        else:
            state = self.observe(identity).state
            logger.info("Detached from %s; container left %s", name, state.value)

        return SessionResult(
            identity=identity,
            verb=verb,
            previous=previous,
            state=state,
            attached=True,
            interrupted=interrupted,
            exit_code=exit_code,
        )

    def _teardown(self, identity: ProjectIdentity, *, force: bool = False) -> None:
        name = identity.container_name
        try:
            info = self.client.inspect_container(name)
        except NotFoundError:
            logger.debug("Container %s already removed", name)
            return

        if info.running:
            self._stop(identity, force=force)

        try:
            self.client.remove_container(name)
        except NotFoundError:
            logger.debug("Container %s disappeared before removal", name)

        try:
            lingering = self.client.inspect_container(name)
        except NotFoundError:
            logger.info("Removed container %s", name)
            return
        raise SafecrateError(
            f"Container {name} is still present after removal",
            code=ExitCode.RUNTIME_ERROR,
            hint=f"Run `docker rm -f {name}` and retry.",
            identity=identity.name,
            transition="remove",
            observed=lingering.status,
        )

    def _stop(self, identity: ProjectIdentity, *, force: bool) -> None:
        name = identity.container_name
        if not force:
            timeout = self.config.stop_timeout_seconds
            logger.debug("Stopping container %s timeout=%ss", name, timeout)
            try:
                self.client.stop_container(name, timeout=timeout)
            except NotFoundError:
                return
            try:
                if not self.client.inspect_container(name).running:
                    return
            except NotFoundError:
                return
            logger.warning("Container %s still running after stop; killing", name)
        try:
            self.client.kill_container(name)
        except NotFoundError:
            return

    def _rollback(self, identity: ProjectIdentity) -> None:
        try:
            self._teardown(identity, force=True)
            logger.warning("Rolled back container %s after failed start", identity.container_name)
        except SafecrateError as cleanup_error:
            logger.error("Rollback of %s failed: %s", identity.container_name, cleanup_error)

    def _check_ownership(
        self,
        identity: ProjectIdentity,
        container: ContainerInfo,
        *,
        transition: str,
    ) -> None:
        owner = container.labels.get(LABEL_HOST_PATH)
        targets = [destination for _, destination in container.mounts]
        if owner == str(identity.host_path) and targets == [self.config.workspace_path]:
            return
        raise ConfigurationMismatchError(
            f"Container {identity.container_name} was not created for {identity.host_path}",
            hint="Remove the conflicting container with `docker rm` before using safecrate here.",
            identity=identity.name,
            transition=transition,
            observed=f"owner={owner or '<none>'} mounts={targets}",
        )

    def _check_requested(
        self,
        identity: ProjectIdentity,
        container: ContainerInfo,
        *,
        network_enabled: bool | None,
        command: tuple[str, ...] | None,
        transition: str,
    ) -> None:
        mismatches: list[str] = []
        if network_enabled is not None and network_mode(network_enabled) != container.network_mode:
            mismatches.append(
                f"network {network_mode(network_enabled)} requested, container uses {container.network_mode}"
            )
        if command is not None and tuple(command) != container.command:
            mismatches.append(f"command {list(command)} requested, container runs {list(container.command)}")
        if not mismatches:
            return
        raise ConfigurationMismatchError(
            f"Existing container {identity.container_name} has different settings",
            hint=(
                "Mount, network and command are fixed at creation; "
                f"run `safecrate remove {identity.host_path} --keep-image` and open again."
            ),
            identity=identity.name,
            transition=transition,
            observed="; ".join(mismatches),
        )
