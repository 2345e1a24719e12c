from __future__ import annotations

import argparse
import logging as py_logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from safecrate import __version__
from safecrate.config import AppConfig, load_config
from safecrate.errors import ExitCode, SafecrateError, user_facing_error
from safecrate.logging import LOG_LEVELS, configure_logging, default_log_path
from safecrate.policy import CustomBuildSource, DefaultBuildSource, parse_command
from safecrate.runtime import DockerClient
from safecrate.session import SessionManager, SessionResult

_VALID_LOG_LEVELS = tuple(LOG_LEVELS)

ManagerFactory = Callable[[AppConfig], SessionManager]

SECURITY_WARNING = (
    "WARNING: Running untrusted code in Docker is NOT 100% secure. "
    "Container escapes are still possible; for maximum safety run inside a full VM."
)


def _log_level_type(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in _VALID_LOG_LEVELS:
        accepted = ", ".join(_VALID_LOG_LEVELS)
        raise argparse.ArgumentTypeError(f"--log-level must be one of: {accepted}")
    return normalized


def _command_type(value: str) -> tuple[str, ...]:
    try:
        return parse_command(value)
    except SafecrateError as exc:
        raise argparse.ArgumentTypeError(f"--cmd {exc.message}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="safecrate",
        description="Safely open and build untrusted code in isolated Docker sandboxes.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", type=_log_level_type, default=None)
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    subparsers = parser.add_subparsers(dest="verb", required=True)

    init = subparsers.add_parser("init", help="Build the sandbox image for a project directory")
    init.add_argument("dir", type=Path, nargs="?", default=Path("."))
    init.add_argument("--dockerfile", type=Path, default=None, help="Custom Dockerfile (overrides default)")

    open_ = subparsers.add_parser("open", help="Open a directory in an isolated container")
    open_.add_argument("dir", type=Path)
    open_.add_argument("--cmd", type=_command_type, default=None, help="Command to run (default: nvim .)")
    open_.add_argument(
        "--keep-container",
        action="store_true",
        help="Keep the container after the command exits so it can be resumed",
    )
    open_.add_argument("--no-network", action="store_true", help="Run with no network access")

    resume = subparsers.add_parser("resume", help="Resume a previously kept container")
    resume.add_argument("dir", type=Path)
    resume.add_argument("--cmd", type=_command_type, default=None)
    resume.add_argument("--no-network", action="store_true")

    remove = subparsers.add_parser("remove", help="Remove the container and image of a project")
    remove.add_argument("dir", type=Path)
    remove.add_argument("--keep-image", action="store_true", help="Only remove the container")
    remove.add_argument("--force", action="store_true", help="Kill a running container immediately")

    status = subparsers.add_parser("status", help="Show the observed sandbox state")
    status.add_argument("dir", type=Path)
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    return parser.parse_args(argv)


def default_manager_factory(config: AppConfig) -> SessionManager:
    client = DockerClient(config.docker_binary, retry_policy=config.retry_policy())
    return SessionManager(client, config=config)


def _report(result: SessionResult) -> None:
    identity = result.identity
    if result.verb == "init":
        if result.rebuilt:
            print(f"Rebuilt image {identity.image_tag} (previous state: {result.previous.value}).")
        else:
            print(f"Built image {identity.image_tag}.")
        print(SECURITY_WARNING)
        print(f"Usage: safecrate open {identity.host_path}")
        return
    if result.verb == "remove":
        print(f"Removed sandbox {identity.container_name} (now {result.state.value}).")
        return
    if result.interrupted:
        print(f"Interrupted; sandbox {identity.container_name} is {result.state.value}.", file=sys.stderr)
    elif result.exit_code:
        print(f"Command exited with status {result.exit_code}.", file=sys.stderr)


def run_cli_flow(namespace: argparse.Namespace, manager: SessionManager) -> int:
    verb = namespace.verb
    if verb == "init":
        source = CustomBuildSource(path=namespace.dockerfile) if namespace.dockerfile else DefaultBuildSource()
        result = manager.init(namespace.dir, source)
    elif verb == "open":
        result = manager.open(
            namespace.dir,
            network_enabled=not namespace.no_network,
            command=namespace.cmd,
            keep_alive=namespace.keep_container,
        )
    elif verb == "resume":
        result = manager.resume(
            namespace.dir,
            network_enabled=False if namespace.no_network else None,
            command=namespace.cmd,
        )
    elif verb == "remove":
        result = manager.remove(namespace.dir, keep_image=namespace.keep_image, force=namespace.force)
    else:
        observed = manager.status(namespace.dir)
        print(f"{observed.identity.container_name}\t{observed.state.value}\t{observed.identity.host_path}")
        return int(ExitCode.SUCCESS)

    _report(result)
    if result.interrupted:
        return int(ExitCode.INTERRUPTED)
    return int(ExitCode.SUCCESS)


def main(
    argv: Sequence[str] | None = None,
    *,
    manager_factory: ManagerFactory | None = None,
) -> int:
    log_path = default_log_path()
    logger = configure_logging(log_file=log_path)
    parser = build_parser()
    try:
        namespace = parser.parse_args(argv)
    except SystemExit as exc:
        if exc.code not in (None, 0):
            logger.warning("Argument parsing failed with exit code %s", exc.code)
        return int(exc.code or 0)

    if namespace.log_file is not None:
        log_path = namespace.log_file.expanduser()
    logger = configure_logging(level=namespace.log_level, log_file=log_path)

    try:
        config = load_config(namespace.config)
        factory = manager_factory or default_manager_factory
        logger.debug("Running verb=%s dir=%s", namespace.verb, namespace.dir)
        return run_cli_flow(namespace, factory(config))
    except SafecrateError as exc:
        logger.error(
            "Handled SafecrateError (code=%s): %s context=%s",
            int(exc.code),
            exc.message,
            exc.context(),
            exc_info=logger.isEnabledFor(py_logging.DEBUG),
        )
        print(user_facing_error(exc.message, hint=exc.hint), file=sys.stderr)
        for key, value in exc.context().items():
            print(f"  {key}: {value}", file=sys.stderr)
        return int(exc.code)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return int(ExitCode.INTERRUPTED)
    except Exception:
        logger.exception("Unhandled exception in CLI entrypoint")
        try:
            hint = f"Inspect logs: {log_path}"
            print(user_facing_error("Unexpected runtime failure", hint=hint), file=sys.stderr)
        except Exception:
            pass
        return int(ExitCode.RUNTIME_ERROR)


def run(argv: Sequence[str] | None = None) -> int:
    return main(argv)
