"""
OCI and Docker media types and constants.

Single source of truth for all manifest and blob media types the mirror
understands.
"""
from __future__ import annotations

# Single-platform manifests
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"

# Multi-platform manifest lists
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"

# Legacy schema 1, recognised only to reject it with a clear error
DOCKER_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
DOCKER_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"

# Config and layer types (passed through untouched)
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_IMAGE_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"

MANIFEST_TYPES = (DOCKER_MANIFEST_V2, OCI_IMAGE_MANIFEST)
INDEX_TYPES = (DOCKER_MANIFEST_LIST, OCI_IMAGE_INDEX)

# Sent as Accept on manifest requests (in order of preference)
ACCEPTED_MANIFEST_TYPES = [
    OCI_IMAGE_INDEX,
    DOCKER_MANIFEST_LIST,
    OCI_IMAGE_MANIFEST,
    DOCKER_MANIFEST_V2,
]


__all__ = [
    "DOCKER_MANIFEST_V2",
    "OCI_IMAGE_MANIFEST",
    "DOCKER_MANIFEST_LIST",
    "OCI_IMAGE_INDEX",
    "DOCKER_MANIFEST_V1",
    "DOCKER_MANIFEST_V1_SIGNED",
    "DOCKER_CONFIG",
    "DOCKER_LAYER",
    "OCI_IMAGE_CONFIG",
    "OCI_IMAGE_LAYER",
    "MANIFEST_TYPES",
    "INDEX_TYPES",
    "ACCEPTED_MANIFEST_TYPES",
]
