"""
Content-addressed staging store for manifests and blobs.

Blobs fetched from a source registry are staged on local disk, keyed by
digest, until every transfer that needs them has pushed them. Content is
verified while it is written; nothing is ever stored under a digest it does
not hash to.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, Optional, Tuple, Union

from ..models import digest_algorithm, new_hasher
from .oci_errors import OciDigestMismatch, OciNotFound, OciSizeMismatch

logger = logging.getLogger(__name__)

__all__ = ["StagedArtifact", "ContentStore", "ByteSource"]

CHUNK_SIZE = 1024 * 1024  # 1 MiB

ByteSource = Union[bytes, BinaryIO, Iterable[bytes]]


@dataclass
class StagedArtifact:
    """
    Staged blob on disk.

    ``refcount`` counts the transfers currently holding the artifact; it is
    only modified by the owning ContentStore under its lock.
    """
    digest: str
    path: Path
    size: int
    refcount: int = 0


def _iter_source(source: ByteSource) -> Iterable[bytes]:
    if isinstance(source, (bytes, bytearray)):
        yield bytes(source)
    elif hasattr(source, "read"):
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    else:
        yield from source


class ContentStore:
    """
    Disk-backed, reference-counted store shared by all transfer workers.

    Invariants:
    - ``put`` is serialized per digest and idempotent: staging a digest that
      is already present increments its refcount without reading the source
    - an artifact is evicted when its refcount drops to zero, unless the
      store was created with ``retain=True``
    """

    def __init__(self, root: Optional[Union[str, Path]] = None, *, retain: bool = False):
        """
        Args:
            root: Staging directory; a private temporary directory if omitted
            retain: Keep zero-refcount artifacts on disk for later runs
        """
        if root is None:
            self.root = Path(tempfile.mkdtemp(prefix="imagesync-"))
            self._owns_root = True
        else:
            self.root = Path(root)
            self.root.mkdir(parents=True, exist_ok=True)
            self._owns_root = False
        self.retain = retain
        self._artifacts: Dict[str, StagedArtifact] = {}
        self._lock = threading.Lock()
        # digest -> (lock, number of threads using it); entries exist only while in use
        self._digest_locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._load_existing()

    def _load_existing(self) -> None:
        """Register artifacts left in a retained cache directory."""
        blobs = self.root / "blobs"
        if not blobs.is_dir():
            return
        for algo_dir in blobs.iterdir():
            if not algo_dir.is_dir():
                continue
            for path in algo_dir.iterdir():
                if path.name.startswith(".tmp."):
                    path.unlink()
                    continue
                digest = f"{algo_dir.name}:{path.name}"
                self._artifacts[digest] = StagedArtifact(digest, path, path.stat().st_size, 0)
        if self._artifacts:
            logger.debug(f"Loaded {len(self._artifacts)} retained artifacts from {self.root}")

    def _path(self, digest: str) -> Path:
        algorithm = digest_algorithm(digest)
        return self.root / "blobs" / algorithm / digest.split(":", 1)[1]

    @contextmanager
    def _serialized(self, digest: str) -> Iterator[None]:
        """Hold the per-digest lock; the entry is dropped when its last user leaves."""
        with self._lock:
            lock, users = self._digest_locks.get(digest, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._digest_locks[digest] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._lock:
                lock, users = self._digest_locks[digest]
                if users == 1:
                    del self._digest_locks[digest]
                else:
                    self._digest_locks[digest] = (lock, users - 1)

    def put(self, digest: str, source: ByteSource, size: Optional[int] = None) -> StagedArtifact:
        """
        Stage content under ``digest``, verifying it while streaming.

        Args:
            digest: Expected digest (``sha256:`` or ``sha512:``)
            source: bytes, a readable binary stream, or an iterable of chunks
            size: Expected size in bytes, checked when given

        Returns:
            The staged artifact with its refcount incremented

        Raises:
            OciDigestMismatch: If the content does not hash to ``digest``
            OciSizeMismatch: If the content length differs from ``size``
            OciParseError: If ``digest`` is malformed
        """
        path = self._path(digest)
        with self._serialized(digest):
            with self._lock:
                existing = self._artifacts.get(digest)
                if existing is not None:
                    existing.refcount += 1
                    return existing

            path.parent.mkdir(parents=True, exist_ok=True)
            hasher = new_hasher(digest)
            written = 0
            fd, temp_name = tempfile.mkstemp(prefix=".tmp.", dir=path.parent)
            temp_path = Path(temp_name)
            try:
                with os.fdopen(fd, "wb") as out:
                    for chunk in _iter_source(source):
                        hasher.update(chunk)
                        out.write(chunk)
                        written += len(chunk)
                    out.flush()
                    os.fsync(out.fileno())

                actual = f"{digest.split(':', 1)[0]}:{hasher.hexdigest()}"
                if size is not None and written != size:
                    raise OciSizeMismatch(
                        f"Size mismatch for {digest}: expected {size} bytes, got {written}",
                        expected=str(size), actual=str(written),
                    )
                if actual != digest:
                    raise OciDigestMismatch(
                        f"Digest mismatch: expected {digest}, got {actual}",
                        expected=digest, actual=actual,
                    )
                os.replace(temp_path, path)
            except BaseException:
                temp_path.unlink(missing_ok=True)
                raise

            artifact = StagedArtifact(digest, path, written, refcount=1)
            with self._lock:
                self._artifacts[digest] = artifact
            logger.debug(f"Staged {digest} ({written} bytes)")
            return artifact

    def acquire(self, digest: str) -> Optional[StagedArtifact]:
        """
        Take a reference on an already staged artifact.

        Returns:
            The artifact with its refcount incremented, or None if not staged
        """
        with self._lock:
            artifact = self._artifacts.get(digest)
            if artifact is not None:
                artifact.refcount += 1
            return artifact

    def get(self, digest: str) -> BinaryIO:
        """
        Open a staged artifact for reading.

        Raises:
            OciNotFound: If nothing is staged under ``digest``
        """
        with self._lock:
            artifact = self._artifacts.get(digest)
        if artifact is None:
            raise OciNotFound(f"Not staged: {digest}")
        return open(artifact.path, "rb")

    def release(self, digest: str) -> None:
        """
        Drop one reference; evict at zero unless retaining.

        Raises:
            OciNotFound: If nothing is staged under ``digest``
            ValueError: If the artifact holds no references
        """
        with self._lock:
            artifact = self._artifacts.get(digest)
            if artifact is None:
                raise OciNotFound(f"Not staged: {digest}")
            if artifact.refcount <= 0:
                raise ValueError(f"Release of {digest} without a matching put/acquire")
            artifact.refcount -= 1
            if artifact.refcount == 0 and not self.retain:
                del self._artifacts[digest]
                artifact.path.unlink(missing_ok=True)
                logger.debug(f"Evicted {digest}")

    def prune(self) -> int:
        """
        Remove every artifact that no transfer holds.

        Returns:
            Number of artifacts removed
        """
        with self._lock:
            idle = [a for a in self._artifacts.values() if a.refcount == 0]
            for artifact in idle:
                del self._artifacts[artifact.digest]
                artifact.path.unlink(missing_ok=True)
        if idle:
            logger.info(f"Pruned {len(idle)} staged artifacts from {self.root}")
        return len(idle)

    def refcount(self, digest: str) -> int:
        with self._lock:
            artifact = self._artifacts.get(digest)
            return artifact.refcount if artifact is not None else 0

    def __contains__(self, digest: object) -> bool:
        with self._lock:
            return digest in self._artifacts

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)

    def close(self) -> None:
        """Remove the staging directory if this store created it."""
        if self._owns_root:
            shutil.rmtree(self.root, ignore_errors=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
