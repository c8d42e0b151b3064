"""
Sync coordinator: runs a batch of mirror requests on a bounded worker pool.

Jobs run independently (no fail-fast); results are returned in the order the
requests were given, whatever order the jobs finished in.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from .reference import DEFAULT_REGISTRY, ImageReference, parse_reference
from .settings import Settings
from .storage.auth import Credentials, TokenCache
from .storage.content_store import ContentStore
from .storage.oci_errors import ErrorKind, OciParseError
from .storage.registry_http import RegistryClient
from .transfer import RetryPolicy, TransferEngine, TransferJob, TransferResult

logger = logging.getLogger(__name__)

__all__ = ["SyncCoordinator", "SyncReport", "RegistryPool", "build_engine"]

RefLike = Union[str, ImageReference]


class SyncCoordinator:
    """
    Schedule transfer jobs across ``concurrency`` workers.

    The coordinator never looks inside errors; it only parses requests,
    dispatches jobs and collects their results.
    """

    def __init__(self, engine: TransferEngine, *, concurrency: int = 4,
                 default_registry: str = DEFAULT_REGISTRY):
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.engine = engine
        self.concurrency = concurrency
        self.default_registry = default_registry

    def _parse(self, ref: RefLike) -> ImageReference:
        if isinstance(ref, ImageReference):
            return ref
        return parse_reference(ref, default_registry=self.default_registry)

    def run(self, pairs: Sequence[Tuple[RefLike, RefLike]]) -> List[TransferResult]:
        """
        Mirror every (source, destination) pair.

        Returns:
            One TransferResult per pair, in input order
        """
        results: List[Optional[TransferResult]] = [None] * len(pairs)
        jobs: List[Tuple[int, TransferJob]] = []

        for index, (source, destination) in enumerate(pairs):
            try:
                job = TransferJob(self._parse(source), self._parse(destination))
            except OciParseError as e:
                logger.error(f"Skipping {source} -> {destination}: {e}")
                results[index] = TransferResult.rejected(str(source), str(destination), e)
                continue
            jobs.append((index, job))

        if jobs:
            logger.info(f"Syncing {len(jobs)} image(s) with {min(self.concurrency, len(jobs))} worker(s)")
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(jobs)),
                                    thread_name_prefix="imagesync-job") as pool:
                futures = {pool.submit(self.engine.run, job): index for index, job in jobs}
                for future in as_completed(futures):
                    results[futures[future]] = future.result()

        return [result for result in results if result is not None]


@dataclass(frozen=True)
class SyncReport:
    """Aggregate view over a batch of results."""
    results: Tuple[TransferResult, ...]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded

    @property
    def cancelled(self) -> bool:
        return any(r.error_kind is ErrorKind.CANCELLED for r in self.results)

    @property
    def exit_code(self) -> int:
        """0 when every job succeeded, 130 when cancelled, 1 otherwise."""
        if self.failed == 0:
            return 0
        return 130 if self.cancelled else 1


class RegistryPool:
    """
    One RegistryClient per registry host, created on first use.

    All clients share a single TokenCache and cancellation event.
    """

    def __init__(self, settings: Settings, credentials: Optional[Mapping[str, Credentials]] = None, *,
                 token_cache: Optional[TokenCache] = None,
                 cancel_event: Optional[threading.Event] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.credentials = dict(credentials or {})
        self.token_cache = token_cache if token_cache is not None else TokenCache()
        self.cancel_event = cancel_event
        self.transport = transport
        self._clients: Dict[str, RegistryClient] = {}
        self._lock = threading.Lock()

    def client_for(self, ref: ImageReference) -> RegistryClient:
        host = ref.api_host
        with self._lock:
            client = self._clients.get(host)
            if client is None:
                credentials = self.credentials.get(ref.registry) or self.credentials.get(host)
                client = RegistryClient(
                    host,
                    credentials,
                    token_cache=self.token_cache,
                    insecure=self.settings.is_insecure(ref.registry),
                    timeout_s=self.settings.http_timeout_s,
                    platform=self.settings.platform,
                    cancel_event=self.cancel_event,
                    transport=self.transport,
                    max_connections=self.settings.concurrency * self.settings.blob_concurrency + 2,
                )
                self._clients[host] = client
                logger.debug(f"Created registry client for {host} "
                             f"({'authenticated' if credentials else 'anonymous'})")
            return client

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()


def build_engine(settings: Settings, pool: RegistryPool, store: ContentStore,
                 cancel_event: Optional[threading.Event] = None) -> TransferEngine:
    """Wire a TransferEngine from settings."""
    return TransferEngine(
        pool.client_for,
        store,
        policy=RetryPolicy.from_settings(settings),
        blob_concurrency=settings.blob_concurrency,
        cancel_event=cancel_event,
    )
