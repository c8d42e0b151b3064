"""
OCI Registry protocol definition.

Defines the repo-aware interface the transfer engine needs from a registry.
``RegistryClient`` implements it over HTTP; tests provide in-memory fakes.
"""
from __future__ import annotations

from typing import BinaryIO, ContextManager, Iterator, Optional, Protocol, Tuple, runtime_checkable

from ..models import BlobDescriptor, Manifest
from ..reference import ImageReference


@runtime_checkable
class OciRegistry(Protocol):
    """
    Repo-aware OCI registry operations.

    All operations are explicitly scoped to a repository, which reflects
    how the OCI Distribution API actually works.
    """

    def fetch_manifest(self, ref: ImageReference) -> Tuple[Manifest, bytes]:
        """
        GET manifest, resolving manifest lists to one platform.

        Returns:
            (Manifest, raw_bytes) where Manifest.digest is computed from raw_bytes

        Raises:
            OciNotFound: If manifest doesn't exist
            OciAuthError: If authentication fails
            OciNetworkError: For connection errors and 5xx responses
            OciDigestMismatch: If the bytes do not match the requested digest
        """
        ...

    def head_manifest(self, ref: ImageReference) -> Optional[str]:
        """
        Return the digest of the manifest stored at ``ref``.

        Returns:
            Digest, or None when the registry has no manifest at ``ref``
        """
        ...

    def fetch_blob(self, repository: str, descriptor: BlobDescriptor) -> ContextManager[Iterator[bytes]]:
        """
        Stream blob content in chunks.

        Usage::

            with registry.fetch_blob(repo, descriptor) as chunks:
                store.put(descriptor.digest, chunks)

        Raises:
            OciNotFound: If blob doesn't exist
            OciSizeMismatch: If the stream length differs from descriptor.size
        """
        ...

    def blob_exists(self, repository: str, descriptor: BlobDescriptor) -> bool:
        """
        Check if blob exists in repository.

        Returns:
            True if blob exists, False on 404. Other failures raise.
        """
        ...

    def push_blob(self, repository: str, descriptor: BlobDescriptor, stream: BinaryIO,
                  mount_from: Optional[str] = None) -> bool:
        """
        Upload blob unless it already exists.

        Args:
            repository: Destination repository
            descriptor: Blob descriptor (digest and size)
            stream: Readable binary stream of the blob content
            mount_from: Repository on the same registry to mount from

        Returns:
            True if the blob was uploaded or mounted, False if it was already present

        Raises:
            OciAuthError, OciNetworkError, OciRateLimited
        """
        ...

    def push_manifest(self, ref: ImageReference, raw: bytes, media_type: str) -> str:
        """
        PUT manifest bytes unchanged and return the verified digest.

        Raises:
            OciDigestMismatch: If server digest != local digest
            OciValidationError: If the registry rejects the manifest
        """
        ...


__all__ = ["OciRegistry"]
