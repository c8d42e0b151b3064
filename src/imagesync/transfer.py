"""
Transfer engine: mirrors one image from a source to a destination reference.

Each ``TransferJob`` moves through ``PENDING -> PULLING -> VERIFYING ->
PUSHING -> SUCCEEDED``; any step may end in ``FAILED``. The engine is the
only component that retries. Registry and store errors arrive as typed
``OciError`` exceptions and are turned into explicit state transitions
here, with attempt counting and backoff kept in one place.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Set, TypeVar

from tenacity import RetryCallState, wait_exponential, wait_random

from .models import BlobDescriptor
from .reference import ImageReference
from .storage.content_store import ContentStore
from .storage.oci_errors import ErrorKind, OciCancelled, OciError, OciRateLimited
from .storage.oci_registry import OciRegistry

logger = logging.getLogger(__name__)

__all__ = ["JobState", "TransferJob", "TransferResult", "RetryPolicy", "TransferEngine"]

T = TypeVar("T")
R = TypeVar("R")


class JobState(str, Enum):
    PENDING = "pending"
    PULLING = "pulling"
    VERIFYING = "verifying"
    PUSHING = "pushing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = (JobState.SUCCEEDED, JobState.FAILED)


@dataclass
class TransferJob:
    """
    One source -> destination mirror request.

    ``staged`` holds the digests this job has a reference on in the content
    store; the store owns the content.
    """
    source: ImageReference
    destination: ImageReference
    state: JobState = JobState.PENDING
    attempts: int = 0
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    digest: Optional[str] = None
    blobs_pushed: int = 0
    staged: Set[str] = field(default_factory=set)
    history: List[JobState] = field(default_factory=lambda: [JobState.PENDING])
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: JobState) -> None:
        with self._lock:
            if self.state in TERMINAL_STATES:
                raise RuntimeError(f"Job {self.source} -> {self.destination} already {self.state.value}")
            self.state = state
            self.history.append(state)
        logger.debug(f"{self.source}: {state.value}")

    def succeed(self, digest: str) -> None:
        self.digest = digest
        self.transition(JobState.SUCCEEDED)

    def fail(self, kind: ErrorKind, message: str) -> None:
        self.error_kind = kind
        self.message = message
        self.transition(JobState.FAILED)

    def track(self, digest: str) -> None:
        with self._lock:
            self.staged.add(digest)

    def count_pushed(self, count: int) -> None:
        with self._lock:
            self.blobs_pushed += count


@dataclass(frozen=True)
class TransferResult:
    """Outcome reported for exactly one requested image."""
    source: str
    destination: str
    state: JobState
    digest: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    attempts: int = 0
    blobs_pushed: int = 0

    @property
    def ok(self) -> bool:
        return self.state is JobState.SUCCEEDED

    @classmethod
    def from_job(cls, job: TransferJob) -> TransferResult:
        return cls(
            source=str(job.source),
            destination=str(job.destination),
            state=job.state,
            digest=job.digest,
            error_kind=job.error_kind,
            message=job.message,
            attempts=job.attempts,
            blobs_pushed=job.blobs_pushed,
        )

    @classmethod
    def rejected(cls, source: str, destination: str, error: OciError) -> TransferResult:
        """Result for a request that never became a job (e.g. unparseable reference)."""
        return cls(source=source, destination=destination, state=JobState.FAILED,
                   error_kind=error.kind, message=str(error))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff for transient failures.

    Network errors and 5xx responses back off exponentially from
    ``base_delay_s`` up to ``max_delay_s``. Rate limits back off from
    ``rate_limit_delay_s`` and never retry sooner than the server's
    Retry-After. Digest mismatches are retried at most
    ``integrity_max_attempts`` times in total.
    """
    max_attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    rate_limit_delay_s: float = 10.0
    max_rate_limit_delay_s: float = 300.0
    integrity_max_attempts: int = 2
    jitter_s: float = 0.0

    @classmethod
    def from_settings(cls, settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_s=settings.base_delay_s,
            max_delay_s=settings.max_delay_s,
            rate_limit_delay_s=settings.rate_limit_delay_s,
            integrity_max_attempts=settings.integrity_max_attempts,
        )

    def is_transient(self, error: OciError, integrity_failures: int) -> bool:
        if error.kind in (ErrorKind.NETWORK, ErrorKind.QUOTA_EXCEEDED):
            return True
        if error.kind is ErrorKind.INTEGRITY:
            return integrity_failures < self.integrity_max_attempts
        return False

    def should_retry(self, error: OciError, attempt: int, integrity_failures: int = 0) -> bool:
        return attempt < self.max_attempts and self.is_transient(error, integrity_failures)

    def delay_for(self, error: OciError, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``."""
        if isinstance(error, OciRateLimited):
            delay = self._backoff(attempt, self.rate_limit_delay_s, self.max_rate_limit_delay_s)
            if error.retry_after is not None:
                delay = max(delay, error.retry_after)
            return delay
        return self._backoff(attempt, self.base_delay_s, self.max_delay_s)

    def _backoff(self, attempt: int, base: float, cap: float) -> float:
        strategy = wait_exponential(multiplier=base, min=base, max=cap) + wait_random(0, self.jitter_s)
        state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})
        state.attempt_number = attempt
        return strategy(state)


class TransferEngine:
    """
    Runs transfer jobs to a terminal state.

    Args:
        client_for: Returns the registry client serving a reference's host
        store: Shared content store used to stage blobs
        policy: Retry policy (defaults to RetryPolicy())
        blob_concurrency: Parallel blob fetches/pushes within one job
        cancel_event: Shared cancellation signal
    """

    def __init__(self, client_for: Callable[[ImageReference], OciRegistry], store: ContentStore, *,
                 policy: Optional[RetryPolicy] = None,
                 blob_concurrency: int = 3,
                 cancel_event: Optional[threading.Event] = None):
        self.client_for = client_for
        self.store = store
        self.policy = policy or RetryPolicy()
        self.blob_concurrency = max(1, blob_concurrency)
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def run(self, job: TransferJob) -> TransferResult:
        """
        Drive ``job`` to SUCCEEDED or FAILED and report the outcome.

        Never raises for registry, store or unexpected errors; every job
        yields exactly one result.
        """
        integrity_failures = 0
        try:
            while not job.terminal:
                job.attempts += 1
                try:
                    digest = self._attempt(job)
                except OciError as e:
                    if e.kind is ErrorKind.INTEGRITY:
                        integrity_failures += 1
                    self._after_failure(job, e, integrity_failures)
                else:
                    job.succeed(digest)
                    logger.info(f"Mirrored {job.source} -> {job.destination} ({digest}, "
                                f"{job.blobs_pushed} blobs pushed, attempt {job.attempts})")
        except Exception as e:
            logger.exception(f"Unexpected error mirroring {job.source} -> {job.destination}")
            if not job.terminal:
                job.fail(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}")
        finally:
            self._release(job)
        return TransferResult.from_job(job)

    def _after_failure(self, job: TransferJob, error: OciError, integrity_failures: int) -> None:
        if error.kind is ErrorKind.CANCELLED or self.cancel_event.is_set():
            job.fail(ErrorKind.CANCELLED, str(error) if error.kind is ErrorKind.CANCELLED else "Transfer cancelled")
            logger.warning(f"Cancelled {job.source} -> {job.destination}")
            return

        if not self.policy.should_retry(error, job.attempts, integrity_failures):
            job.fail(error.kind, str(error))
            logger.error(f"Failed {job.source} -> {job.destination} after {job.attempts} "
                         f"attempt(s) [{error.kind.value}]: {error}")
            return

        delay = self.policy.delay_for(error, job.attempts)
        logger.warning(f"{job.source}: attempt {job.attempts}/{self.policy.max_attempts} failed "
                       f"[{error.kind.value}]: {error}; retrying in {delay:.1f}s")
        if self.cancel_event.wait(delay):
            job.fail(ErrorKind.CANCELLED, "Transfer cancelled during backoff")

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OciCancelled("Transfer cancelled")

    def _attempt(self, job: TransferJob) -> str:
        """One pull -> verify -> push pass. Returns the destination manifest digest."""
        self._check_cancelled()
        source = self.client_for(job.source)
        destination = self.client_for(job.destination)

        job.transition(JobState.PULLING)
        existing = destination.head_manifest(job.destination)
        manifest, raw = source.fetch_manifest(job.source)
        if existing == manifest.digest:
            logger.info(f"{job.destination} already at {manifest.digest}; nothing to do")
            return manifest.digest

        repository = job.destination.repository
        missing = [d for d in manifest.blobs() if not destination.blob_exists(repository, d)]
        logger.debug(f"{job.source}: {len(missing)} of {len(manifest.blobs())} blobs missing at destination")

        job.transition(JobState.VERIFYING)
        self._for_each(missing, lambda d: self._stage(job, source, d))

        job.transition(JobState.PUSHING)
        mount_from = job.source.repository if job.source.api_host == job.destination.api_host else None
        pushed = self._for_each(missing, lambda d: self._push(job, destination, d, mount_from))
        job.count_pushed(sum(1 for p in pushed if p))

        self._check_cancelled()
        return destination.push_manifest(job.destination, raw, manifest.media_type)

    def _stage(self, job: TransferJob, source: OciRegistry, descriptor: BlobDescriptor) -> None:
        if descriptor.digest in job.staged:
            return
        self._check_cancelled()
        if self.store.acquire(descriptor.digest) is None:
            with source.fetch_blob(job.source.repository, descriptor) as chunks:
                self.store.put(descriptor.digest, chunks, size=descriptor.size)
        job.track(descriptor.digest)

    def _push(self, job: TransferJob, destination: OciRegistry, descriptor: BlobDescriptor,
              mount_from: Optional[str]) -> bool:
        self._check_cancelled()
        with self.store.get(descriptor.digest) as stream:
            return destination.push_blob(job.destination.repository, descriptor, stream, mount_from=mount_from)

    def _for_each(self, items: Sequence[T], fn: Callable[[T], R]) -> List[R]:
        """Apply ``fn`` to items, in parallel up to blob_concurrency; first error wins."""
        if self.blob_concurrency == 1 or len(items) <= 1:
            return [fn(item) for item in items]
        with ThreadPoolExecutor(max_workers=min(self.blob_concurrency, len(items)),
                                thread_name_prefix="imagesync-blob") as pool:
            futures = [pool.submit(fn, item) for item in items]
            try:
                return [future.result() for future in futures]
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _release(self, job: TransferJob) -> None:
        for digest in sorted(job.staged):
            self.store.release(digest)
        job.staged.clear()
