"""
Image reference parsing.

Parses ``[registry/]repository[:tag][@digest]`` strings into a normalized
``ImageReference`` and formats them back to their canonical form. Pure
functions, no I/O.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .storage.oci_errors import OciParseError

__all__ = [
    "DEFAULT_REGISTRY",
    "ImageReference",
    "parse_reference",
    "format_reference",
    "flatten_destination",
]

DEFAULT_REGISTRY = "docker.io"
DOCKER_HUB_API_HOST = "registry-1.docker.io"
_DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:\.|_|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(r"^(?:sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")
_HOST_RE = re.compile(r"^[A-Za-z0-9.-]+(?::[0-9]+)?$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Invariants:
    - repository: non-empty, lowercase, valid path components
    - exactly one of tag/digest is set
    """
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def __post_init__(self):
        if (self.tag is None) == (self.digest is None):
            raise OciParseError(
                f"Exactly one of tag or digest must be set for {self.registry}/{self.repository}"
            )

    @property
    def ref(self) -> str:
        """Tag or digest, as used in ``/v2/<name>/manifests/<ref>``."""
        return self.digest if self.digest is not None else self.tag  # type: ignore[return-value]

    @property
    def api_host(self) -> str:
        """Host that serves the registry HTTP API for this reference."""
        if self.registry == DEFAULT_REGISTRY:
            return DOCKER_HUB_API_HOST
        return self.registry

    def with_digest(self, digest: str) -> ImageReference:
        return ImageReference(self.registry, self.repository, digest=digest)

    def __str__(self) -> str:
        return format_reference(self)


def _normalize_registry(host: str) -> str:
    host = host.lower()
    if host in _DOCKER_HUB_ALIASES:
        return DEFAULT_REGISTRY
    return host


def _is_registry_host(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(s: str, default_registry: str = DEFAULT_REGISTRY) -> ImageReference:
    """
    Parse an image reference string.

    Args:
        s: Reference such as ``alpine``, ``library/alpine:3.19``,
           ``ghcr.io/org/app@sha256:<hex>``
        default_registry: Registry used when the string names none

    Returns:
        ImageReference with registry, repository and tag or digest

    Raises:
        OciParseError: If the reference is malformed

    Examples:
        >>> parse_reference("alpine")
        ImageReference(registry='docker.io', repository='library/alpine', tag='latest', digest=None)

        >>> str(parse_reference("localhost:5000/team/app:v1"))
        'localhost:5000/team/app:v1'
    """
    if not s or not s.strip():
        raise OciParseError("Image reference cannot be empty")
    original = s
    s = s.strip()

    digest: Optional[str] = None
    if "@" in s:
        s, digest = s.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise OciParseError(f"Invalid digest in reference {original!r}: {digest}")

    registry = default_registry
    first, sep, rest = s.partition("/")
    if sep and _is_registry_host(first):
        if not _HOST_RE.match(first):
            raise OciParseError(f"Invalid registry host in reference {original!r}: {first}")
        registry = first
        s = rest

    tag: Optional[str] = None
    last_slash = s.rfind("/")
    colon = s.rfind(":")
    if colon > last_slash:
        s, tag = s[:colon], s[colon + 1:]
        if not _TAG_RE.match(tag):
            raise OciParseError(f"Invalid tag in reference {original!r}: {tag!r}")

    repository = s
    if not repository:
        raise OciParseError(f"Repository cannot be empty in reference {original!r}")
    for component in repository.split("/"):
        if not _COMPONENT_RE.match(component):
            raise OciParseError(
                f"Invalid repository {repository!r} in reference {original!r}. "
                "Repository components must be lowercase alphanumerics separated by '.', '_', '__' or '-'."
            )

    registry = _normalize_registry(registry)
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    if digest is not None:
        # Digest takes priority; a tag alongside it is informational only
        return ImageReference(registry, repository, digest=digest)
    return ImageReference(registry, repository, tag=tag or "latest")


def format_reference(ref: ImageReference) -> str:
    """Format a reference in canonical ``registry/repository(:tag|@digest)`` form."""
    if ref.digest is not None:
        return f"{ref.registry}/{ref.repository}@{ref.digest}"
    return f"{ref.registry}/{ref.repository}:{ref.tag}"


def _short_name(source: ImageReference, default_registry: str) -> str:
    """Source name as it is usually written: no default registry, no ``library/``."""
    repository = source.repository
    if source.registry == DEFAULT_REGISTRY and repository.startswith("library/"):
        repository = repository[len("library/"):]
    if source.registry == _normalize_registry(default_registry):
        return repository
    return f"{source.registry}/{repository}"


def flatten_destination(source: ImageReference, target_repository: str,
                        default_registry: str = DEFAULT_REGISTRY) -> ImageReference:
    """
    Build a destination reference that encodes the source name in the tag.

    All mirrored images land in one target repository; the short source name
    and its tag (or digest) are joined with ``_`` to form the destination tag.
    The default registry and Docker Hub's ``library/`` namespace are left out,
    so ``alpine:3.19`` becomes ``alpine_3.19`` and ``nginx`` ``nginx_latest``.

    Args:
        source: Parsed source reference
        target_repository: ``[registry/]repository`` without tag or digest
        default_registry: Registry used when target or source names none

    Returns:
        Destination reference, e.g. ``docker.io/acme/mirror:alpine_3.19``

    Raises:
        OciParseError: If the target carries a tag/digest or the flattened
            tag is not a valid tag
    """
    if "@" in target_repository or ":" in target_repository.rsplit("/", 1)[-1]:
        raise OciParseError(f"Target repository must not include a tag or digest: {target_repository}")
    target = parse_reference(target_repository, default_registry=default_registry)

    flat = f"{_short_name(source, default_registry)}_{source.ref}"
    flat = flat.replace("/", "_").replace(":", "_").replace("@", "_")
    if not _TAG_RE.match(flat):
        raise OciParseError(f"Cannot derive a valid destination tag from {source}: {flat!r}")
    return ImageReference(target.registry, target.repository, tag=flat)
