"""
Data models for image manifests and blob descriptors.

These Pydantic models give typed access to the parts of a manifest the
mirror needs (config, layers, platform entries) while the raw bytes stay the
source of truth for digests.
"""
from __future__ import annotations

import hashlib
import json
import re
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .storage.oci_errors import OciParseError, OciUnsupportedMediaType
from .storage.oci_media_types import (
    DOCKER_MANIFEST_V1,
    DOCKER_MANIFEST_V1_SIGNED,
    INDEX_TYPES,
    MANIFEST_TYPES,
)

__all__ = [
    "BlobDescriptor",
    "Platform",
    "PlatformManifest",
    "Manifest",
    "ManifestIndex",
    "SUPPORTED_ALGORITHMS",
    "compute_digest",
    "digest_algorithm",
    "new_hasher",
    "parse_manifest",
]

SUPPORTED_ALGORITHMS = {"sha256": 64, "sha512": 128}
_DIGEST_RE = re.compile(r"^(sha256|sha512):([a-f0-9]+)$")


def digest_algorithm(digest: str) -> str:
    """
    Validate a digest string and return its algorithm name.

    Raises:
        OciParseError: If the digest is not ``sha256:<64 hex>`` or ``sha512:<128 hex>``
    """
    match = _DIGEST_RE.match(digest or "")
    if not match or len(match.group(2)) != SUPPORTED_ALGORITHMS[match.group(1)]:
        raise OciParseError(f"Invalid digest format: {digest}")
    return match.group(1)


def new_hasher(digest: str):
    """Return a hashlib object matching the algorithm of ``digest``."""
    return hashlib.new(digest_algorithm(digest))


def compute_digest(data: bytes, algorithm: str = "sha256") -> str:
    """Compute an ``algo:hex`` digest over ``data``."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise OciParseError(f"Unsupported digest algorithm: {algorithm}")
    return f"{algorithm}:{hashlib.new(algorithm, data).hexdigest()}"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class BlobDescriptor(_Model):
    """Content-addressed reference to a config or layer blob."""
    digest: str = Field(..., description="Content digest (algo:hex)")
    media_type: str = Field(default="application/octet-stream", alias="mediaType")
    size: int = Field(..., ge=0, description="Exact byte length")

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v):
        """Reject malformed digests before they reach registry URLs."""
        digest_algorithm(v)
        return v


class Platform(_Model):
    architecture: str
    os: str
    variant: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> Platform:
        """Parse ``os/arch[/variant]`` (e.g. ``linux/arm64/v8``)."""
        parts = value.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"Invalid platform {value!r}, expected os/arch[/variant]")
        return cls(os=parts[0], architecture=parts[1], variant=parts[2] if len(parts) == 3 else None)

    def matches(self, wanted: Platform) -> bool:
        if self.os != wanted.os or self.architecture != wanted.architecture:
            return False
        return wanted.variant is None or self.variant == wanted.variant


class PlatformManifest(BlobDescriptor):
    """Entry of a manifest list / image index."""
    platform: Optional[Platform] = None


class Manifest(_Model):
    """
    Single-platform image manifest.

    ``digest`` and ``size`` are computed from the exact bytes the manifest
    was parsed from, never taken from the network.
    """
    media_type: str = Field(..., alias="mediaType")
    digest: str
    size: int
    config: BlobDescriptor
    layers: List[BlobDescriptor] = Field(default_factory=list)

    def blobs(self) -> List[BlobDescriptor]:
        """Config then layers, de-duplicated by digest, in manifest order."""
        seen = set()
        result = []
        for descriptor in [self.config, *self.layers]:
            if descriptor.digest not in seen:
                seen.add(descriptor.digest)
                result.append(descriptor)
        return result


class ManifestIndex(_Model):
    """Manifest list (Docker) or image index (OCI)."""
    media_type: str = Field(..., alias="mediaType")
    digest: str
    size: int
    manifests: List[PlatformManifest] = Field(default_factory=list)

    def select(self, wanted: Optional[Platform]) -> PlatformManifest:
        """
        Pick the platform entry deterministically.

        First entry matching ``wanted``, else the first entry of the list.
        """
        if not self.manifests:
            raise OciUnsupportedMediaType(f"Manifest list {self.digest} has no entries")
        if wanted is not None:
            for entry in self.manifests:
                if entry.platform is not None and entry.platform.matches(wanted):
                    return entry
        return self.manifests[0]


def parse_manifest(raw: bytes, media_type: Optional[str] = None,
                   algorithm: str = "sha256") -> Union[Manifest, ManifestIndex]:
    """
    Parse raw manifest bytes.

    Args:
        raw: Exact bytes returned by the registry
        media_type: Content-Type header; the body's ``mediaType`` wins if set
        algorithm: Digest algorithm used for the computed digest

    Returns:
        Manifest or ManifestIndex with digest computed from ``raw``

    Raises:
        OciUnsupportedMediaType: If the schema cannot be mirrored
    """
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise OciUnsupportedMediaType(f"Manifest is not valid JSON: {e}") from e
    if not isinstance(document, dict):
        raise OciUnsupportedMediaType("Manifest is not a JSON object")

    kind = document.get("mediaType") or media_type
    if not kind:
        # OCI manifests may omit mediaType; infer from shape
        kind = "application/vnd.oci.image.index.v1+json" if "manifests" in document \
            else "application/vnd.oci.image.manifest.v1+json"
    kind = kind.split(";", 1)[0].strip()

    if kind in (DOCKER_MANIFEST_V1, DOCKER_MANIFEST_V1_SIGNED) or document.get("schemaVersion") == 1:
        raise OciUnsupportedMediaType("Docker schema 1 manifests are not supported")

    fields = dict(document, mediaType=kind, digest=compute_digest(raw, algorithm), size=len(raw))
    try:
        if kind in INDEX_TYPES:
            return ManifestIndex.model_validate(fields)
        if kind in MANIFEST_TYPES:
            return Manifest.model_validate(fields)
    except ValidationError as e:
        raise OciUnsupportedMediaType(f"Malformed {kind} manifest: {e}") from e
    raise OciUnsupportedMediaType(f"Unsupported manifest media type: {kind}")
