"""
Tests for the content-addressed staging store.

Validates streaming verification, reference counting under concurrency,
eviction and retained caches.
"""
from __future__ import annotations

import io
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from imagesync.models import compute_digest
from imagesync.storage.content_store import ContentStore
from imagesync.storage.oci_errors import (
    OciDigestMismatch,
    OciNotFound,
    OciParseError,
    OciSizeMismatch,
)

DATA = b"layer content " * 1000
DIGEST = compute_digest(DATA)


def _blob_files(store: ContentStore):
    return [p for p in (store.root / "blobs").rglob("*") if p.is_file()]


class TestPutAndGet:
    """Test staging and reading artifacts."""

    @pytest.mark.parametrize("source", [
        DATA,
        io.BytesIO(DATA),
        iter([DATA[:100], DATA[100:5000], DATA[5000:]]),
    ])
    def test_put_accepts_bytes_streams_and_iterables(self, store, source):
        artifact = store.put(DIGEST, source, size=len(DATA))
        assert artifact.digest == DIGEST
        assert artifact.size == len(DATA)
        assert artifact.refcount == 1
        with store.get(DIGEST) as f:
            assert f.read() == DATA

    def test_layout_is_content_addressed(self, store):
        artifact = store.put(DIGEST, DATA)
        assert artifact.path == store.root / "blobs" / "sha256" / DIGEST.split(":", 1)[1]

    def test_sha512(self, store):
        digest = compute_digest(DATA, "sha512")
        store.put(digest, DATA)
        assert digest in store

    def test_get_missing_raises_not_found(self, store):
        with pytest.raises(OciNotFound):
            store.get(DIGEST)

    def test_malformed_digest(self, store):
        with pytest.raises(OciParseError):
            store.put("sha256:nothex", DATA)


class TestVerification:
    """Test that nothing is stored under a digest it does not hash to."""

    def test_digest_mismatch_leaves_store_unchanged(self, store):
        with pytest.raises(OciDigestMismatch) as exc_info:
            store.put(DIGEST, DATA + b"tampered")
        assert exc_info.value.expected == DIGEST
        assert exc_info.value.actual == compute_digest(DATA + b"tampered")
        assert DIGEST not in store
        assert len(store) == 0
        assert _blob_files(store) == []

    def test_size_mismatch(self, store):
        with pytest.raises(OciSizeMismatch):
            store.put(DIGEST, DATA, size=len(DATA) + 1)
        assert DIGEST not in store

    def test_failing_source_leaves_no_temp_file(self, store):
        def broken():
            yield DATA[:10]
            raise OSError("connection reset")

        with pytest.raises(OSError):
            store.put(DIGEST, broken())
        assert _blob_files(store) == []

    def test_put_after_failed_put_succeeds(self, store):
        with pytest.raises(OciDigestMismatch):
            store.put(DIGEST, b"wrong")
        store.put(DIGEST, DATA)
        assert store.refcount(DIGEST) == 1


class TestReferenceCounting:
    """Test refcount bookkeeping and eviction."""

    def test_second_put_does_not_read_source(self, store):
        store.put(DIGEST, DATA)

        def must_not_be_read():
            raise AssertionError("source read for an already staged digest")
            yield b""  # pragma: no cover

        artifact = store.put(DIGEST, must_not_be_read())
        assert artifact.refcount == 2

    def test_concurrent_puts_store_one_copy(self, store):
        """Test N concurrent puts of one digest: refcount N, one file."""
        workers = 8
        barrier = threading.Barrier(workers)

        def put():
            barrier.wait()
            return store.put(DIGEST, io.BytesIO(DATA))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            artifacts = list(pool.map(lambda _: put(), range(workers)))

        assert store.refcount(DIGEST) == workers
        assert len({id(a) for a in artifacts}) == 1
        assert len(_blob_files(store)) == 1
        assert store._digest_locks == {}

    def test_acquire(self, store):
        assert store.acquire(DIGEST) is None
        store.put(DIGEST, DATA)
        assert store.acquire(DIGEST).refcount == 2

    def test_release_evicts_at_zero(self, store):
        artifact = store.put(DIGEST, DATA)
        store.acquire(DIGEST)
        store.release(DIGEST)
        assert artifact.path.exists()
        store.release(DIGEST)
        assert DIGEST not in store
        assert not artifact.path.exists()

    def test_release_unknown_digest(self, store):
        with pytest.raises(OciNotFound):
            store.release(DIGEST)

    def test_per_digest_locks_do_not_accumulate(self, store):
        """Test that staging many distinct digests leaves no per-digest lock behind."""
        for i in range(50):
            data = f"layer {i}".encode()
            store.put(compute_digest(data), data)
            store.release(compute_digest(data))
        with pytest.raises(OciDigestMismatch):
            store.put(DIGEST, b"not the layer")
        assert len(store) == 0
        assert store._digest_locks == {}


class TestRetainedCache:
    """Test retain mode, reload and prune."""

    def test_retain_keeps_zero_refcount_artifacts(self, tmp_path):
        store = ContentStore(tmp_path / "cache", retain=True)
        store.put(DIGEST, DATA)
        store.release(DIGEST)
        assert DIGEST in store
        assert store.refcount(DIGEST) == 0
        with pytest.raises(ValueError):
            store.release(DIGEST)

    def test_reload_and_prune(self, tmp_path):
        root = tmp_path / "cache"
        first = ContentStore(root, retain=True)
        first.put(DIGEST, DATA)
        first.release(DIGEST)
        stray = root / "blobs" / "sha256" / ".tmp.partial"
        stray.write_bytes(b"partial")

        second = ContentStore(root, retain=True)
        assert DIGEST in second
        assert not stray.exists()
        assert second.acquire(DIGEST) is not None
        assert second.prune() == 0
        second.release(DIGEST)
        assert second.prune() == 1
        assert len(second) == 0
        assert _blob_files(second) == []

    def test_close_removes_owned_root(self):
        store = ContentStore()
        store.put(DIGEST, DATA)
        root = store.root
        store.close()
        assert not root.exists()

    def test_close_keeps_given_root(self, tmp_path):
        with ContentStore(tmp_path / "given") as store:
            store.put(DIGEST, DATA)
        assert (tmp_path / "given").exists()
