"""Derive a stable runtime identity from a host project directory."""

from __future__ import annotations

import hashlib
import logging as py_logging
import re
from dataclasses import dataclass
from pathlib import Path

from safecrate.errors import InvalidPathError

logger = py_logging.getLogger(__name__)

NAME_PREFIX = "safecrate"
IMAGE_VERSION = "latest"
DIGEST_LENGTH = 24
SLUG_MAX_LENGTH = 24

_SANITIZE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ProjectIdentity:
    host_path: Path
    slug: str
    digest: str

    @property
    def name(self) -> str:
        return f"{NAME_PREFIX}-{self.slug}-{self.digest}"

    @property
    def image_tag(self) -> str:
        return f"{self.name}:{IMAGE_VERSION}"

    @property
    def container_name(self) -> str:
        return self.name

    def __str__(self) -> str:
        return f"{self.container_name} ({self.host_path})"


def canonicalize(host_path: str | Path) -> Path:
    raw = Path(host_path)
    try:
        resolved = raw.expanduser().resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise InvalidPathError(
            f"Project directory does not exist: {raw}",
            hint="Pass an existing directory to open in the sandbox.",
        ) from exc
    if not resolved.is_dir():
        raise InvalidPathError(
            f"Project path is not a directory: {resolved}",
            hint="Pass the project directory, not a file inside it.",
        )
    return resolved


def path_digest(canonical: Path) -> str:
    encoded = str(canonical).encode("utf-8", "surrogateescape")
    return hashlib.sha256(encoded).hexdigest()[:DIGEST_LENGTH]


def _slug(canonical: Path) -> str:
    # Readability only; uniqueness comes from the digest.
    cleaned = _SANITIZE.sub("-", canonical.name.lower()).strip("-")
    return cleaned[:SLUG_MAX_LENGTH].strip("-") or "root"


def resolve(host_path: str | Path) -> ProjectIdentity:
    canonical = canonicalize(host_path)
    identity = ProjectIdentity(
        host_path=canonical,
        slug=_slug(canonical),
        digest=path_digest(canonical),
    )
    logger.debug("Resolved identity path=%s name=%s", canonical, identity.name)
    return identity
