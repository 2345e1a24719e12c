from __future__ import annotations

import csv
import json
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from safecrate.config import AppConfig
from safecrate.retry import RetryPolicy
from safecrate.runtime import DockerClient
from safecrate.session import SessionManager

_SECURITY_TEST_FILES = {
    "test_policy.py",
    "test_identity.py",
}

UNAVAILABLE_STDERR = (
    "Cannot connect to the Docker daemon at unix:///var/run/docker.sock. "
    "Is the docker daemon running?"
)


def _cp(returncode: int, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@dataclass
class FakeContainer:
    name: str
    image: str
    network: str
    command: list[str]
    mounts: list[tuple[str, str]]
    labels: dict[str, str]
    status: str = "created"


@dataclass
class FakeDocker:
    """In-memory stand-in for the docker CLI, driven through the runner seam."""

    images: set[str] = field(default_factory=set)
    containers: dict[str, FakeContainer] = field(default_factory=dict)
    commands: list[list[str]] = field(default_factory=list)
    built_dockerfiles: list[str] = field(default_factory=list)
    unavailable_failures: int = 0
    foreground_exit: int = 0
    interrupt_foreground: bool = False
    stop_leaves_running: bool = False
    start_failure: str = ""

    def verbs(self) -> list[str]:
        return [" ".join(cmd[1:3]) if cmd[1] in {"image", "container"} else cmd[1] for cmd in self.commands]

    def __call__(self, args: list[str], **_: object) -> subprocess.CompletedProcess:
        self.commands.append(list(args))
        if self.unavailable_failures > 0:
            self.unavailable_failures -= 1
            return _cp(1, stderr=UNAVAILABLE_STDERR)
        rest = list(args[1:])
        verb = rest[0]
        if verb in {"image", "container"}:
            verb = f"{verb} {rest[1]}"
            rest = rest[2:]
        else:
            rest = rest[1:]
        handler = getattr(self, "_" + verb.replace(" ", "_"))
        return handler(rest)

    def _missing(self, name: str) -> subprocess.CompletedProcess:
        return _cp(1, stderr=f"Error response from daemon: No such container: {name}")

    def _build(self, rest: list[str]) -> subprocess.CompletedProcess:
        tag = rest[rest.index("-t") + 1]
        dockerfile = Path(rest[rest.index("-f") + 1])
        self.built_dockerfiles.append(dockerfile.read_text(encoding="utf-8"))
        self.images.add(tag)
        return _cp(0, stdout=f"Successfully tagged {tag}\n")

    def _image_inspect(self, rest: list[str]) -> subprocess.CompletedProcess:
        if rest[0] in self.images:
            return _cp(0, stdout=json.dumps([{"RepoTags": [rest[0]]}]))
        return _cp(1, stderr=f"Error: No such image: {rest[0]}")

    def _image_rm(self, rest: list[str]) -> subprocess.CompletedProcess:
        if rest[0] not in self.images:
            return _cp(1, stderr=f"Error response from daemon: No such image: {rest[0]}")
        self.images.discard(rest[0])
        return _cp(0, stdout=f"Untagged: {rest[0]}\n")

    def _create(self, rest: list[str]) -> subprocess.CompletedProcess:
        options: dict[str, list[str]] = {}
        index = 0
        while rest[index].startswith("--"):
            flag = rest[index]
            if flag in {"--interactive", "--tty"}:
                index += 1
                continue
            options.setdefault(flag, []).append(rest[index + 1])
            index += 2
        image, command = rest[index], rest[index + 1 :]
        name = options["--name"][0]
        if name in self.containers:
            return _cp(
                125,
                stderr=(
                    f'docker: Error response from daemon: Conflict. The container name "/{name}" '
                    'is already in use by container "0123abcd".'
                ),
            )
        if image not in self.images:
            return _cp(125, stderr=f"Unable to find image '{image}' locally")
        mounts = []
        for raw in options.get("--mount", []):
            fields = dict(item.split("=", 1) for item in next(csv.reader([raw])) if "=" in item)
            mounts.append((fields["source"], fields["target"]))
        labels = dict(item.split("=", 1) for item in options.get("--label", []))
        self.containers[name] = FakeContainer(
            name=name,
            image=image,
            network=options["--network"][0],
            command=command,
            mounts=mounts,
            labels=labels,
        )
        return _cp(0, stdout="0123abcd\n")

    def _foreground(self, container: FakeContainer) -> subprocess.CompletedProcess:
        container.status = "running"
        if self.interrupt_foreground:
            raise KeyboardInterrupt
        container.status = "exited"
        return _cp(self.foreground_exit)

    def _start(self, rest: list[str]) -> subprocess.CompletedProcess:
        name = rest[-1]
        container = self.containers.get(name)
        if container is None:
            return self._missing(name)
        if self.start_failure:
            return _cp(1, stderr=self.start_failure)
        if "--attach" in rest:
            return self._foreground(container)
        container.status = "running"
        return _cp(0, stdout=f"{name}\n")

    def _attach(self, rest: list[str]) -> subprocess.CompletedProcess:
        container = self.containers.get(rest[0])
        if container is None:
            return self._missing(rest[0])
        if container.status == "paused":
            return _cp(1, stderr="You cannot attach to a paused container, unpause it first")
        if container.status != "running":
            return _cp(1, stderr="You cannot attach to a stopped container, start it first")
        return self._foreground(container)

    def _unpause(self, rest: list[str]) -> subprocess.CompletedProcess:
        container = self.containers.get(rest[-1])
        if container is None:
            return self._missing(rest[-1])
        if container.status != "paused":
            return _cp(1, stderr=f"Error response from daemon: Container {rest[-1]} is not paused")
        container.status = "running"
        return _cp(0, stdout=f"{rest[-1]}\n")

    def _stop(self, rest: list[str]) -> subprocess.CompletedProcess:
        container = self.containers.get(rest[-1])
        if container is None:
            return self._missing(rest[-1])
        if not self.stop_leaves_running:
            container.status = "exited"
        return _cp(0, stdout=f"{rest[-1]}\n")

    def _kill(self, rest: list[str]) -> subprocess.CompletedProcess:
        container = self.containers.get(rest[-1])
        if container is None:
            return self._missing(rest[-1])
        container.status = "exited"
        return _cp(0, stdout=f"{rest[-1]}\n")

    def _rm(self, rest: list[str]) -> subprocess.CompletedProcess:
        name = rest[-1]
        container = self.containers.get(name)
        if container is None:
            return self._missing(name)
        if container.status == "running" and "-f" not in rest:
            return _cp(
                1,
                stderr=(
                    f'Error response from daemon: cannot remove container "/{name}": '
                    "container is running: stop the container before removing or force remove"
                ),
            )
        del self.containers[name]
        return _cp(0, stdout=f"{name}\n")

    def _container_inspect(self, rest: list[str]) -> subprocess.CompletedProcess:
        container = self.containers.get(rest[0])
        if container is None:
            return _cp(1, stderr=f"Error: No such container: {rest[0]}")
        payload = [
            {
                "Name": f"/{container.name}",
                "State": {"Status": container.status},
                "HostConfig": {"NetworkMode": container.network},
                "Config": {"Cmd": container.command, "Labels": container.labels, "Image": container.image},
                "Mounts": [
                    {"Type": "bind", "Source": source, "Destination": target}
                    for source, target in container.mounts
                ],
            }
        ]
        return _cp(0, stdout=json.dumps(payload))


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def docker_client(fake_docker: FakeDocker) -> DockerClient:
    return DockerClient(
        runner=fake_docker,
        retry_policy=RetryPolicy(max_attempts=3, initial_backoff_seconds=0.0),
        sleep=lambda _: None,
    )


@pytest.fixture
def manager(docker_client: DockerClient) -> SessionManager:
    return SessionManager(docker_client, config=AppConfig(stop_timeout_seconds=1))


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "proj"
    path.mkdir()
    return path


@pytest.hookimpl(trylast=True)
def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    del config
    for item in items:
        path = Path(str(getattr(item, "path", item.fspath)))
        name = path.name

        if "integration" in path.parts:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)

        if name in _SECURITY_TEST_FILES:
            item.add_marker(pytest.mark.security)
