"""
Tests for the sync coordinator.

Covers scheduling (order preservation, isolation between jobs, rejected
requests), the aggregate report, and an end-to-end sync over the HTTP
client against in-process registries.
"""
from __future__ import annotations

import threading
import time

import pytest

from imagesync.coordinator import RegistryPool, SyncCoordinator, SyncReport, build_engine
from imagesync.models import compute_digest
from imagesync.reference import parse_reference
from imagesync.storage.content_store import ContentStore
from imagesync.storage.oci_errors import ErrorKind, OciNetworkError
from imagesync.transfer import JobState, TransferResult

from tests.storage.fakes import RegistryServer, route

MIRROR = "myregistry.example.com/mirror"


class SlowEngine:
    """Engine stand-in that sleeps per job and records how many jobs overlap."""

    def __init__(self, delays):
        self.delays = {f"docker.io/library/app{i}:1": d for i, d in enumerate(delays)}
        self.in_flight = 0
        self.peak = 0
        self.finished = []
        self._lock = threading.Lock()

    def run(self, job):
        source = str(job.source)
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        time.sleep(self.delays[source])
        with self._lock:
            self.in_flight -= 1
            self.finished.append(source)
        return TransferResult(source, str(job.destination), JobState.SUCCEEDED, digest="sha256:" + "0" * 64)


class TestSyncCoordinator:
    """Test scheduling over the in-memory registries."""

    def test_results_in_request_order(self, engine, hub):
        """Test that a failure in the middle does not reorder or affect the others."""
        hub.add_image("library/a", "1", [b"a"])
        hub.add_image("library/c", "1", [b"c"])
        coordinator = SyncCoordinator(engine, concurrency=3)

        results = coordinator.run([
            ("a:1", f"{MIRROR}/a:1"),
            ("b:1", f"{MIRROR}/b:1"),
            ("c:1", f"{MIRROR}/c:1"),
        ])

        assert [r.source for r in results] == [
            "docker.io/library/a:1", "docker.io/library/b:1", "docker.io/library/c:1",
        ]
        assert [r.ok for r in results] == [True, False, True]
        assert results[1].error_kind is ErrorKind.NOT_FOUND

    def test_unparseable_request_reported(self, engine, hub):
        hub.add_image("library/alpine", "3.19", [b"layer"])
        results = SyncCoordinator(engine).run([
            ("Not A Reference!", f"{MIRROR}/x:1"),
            ("alpine:3.19", f"{MIRROR}/alpine:3.19"),
        ])
        assert results[0].source == "Not A Reference!"
        assert results[0].error_kind is ErrorKind.PARSE
        assert results[0].attempts == 0
        assert results[1].ok

    def test_accepts_parsed_references(self, engine, hub):
        hub.add_image("library/alpine", "3.19", [b"layer"])
        results = SyncCoordinator(engine).run([
            (parse_reference("alpine:3.19"), parse_reference(f"{MIRROR}/alpine:3.19")),
        ])
        assert results[0].ok

    def test_empty_batch(self, engine):
        assert SyncCoordinator(engine).run([]) == []

    def test_shared_layers_across_jobs(self, engine, hub, mirror, store):
        """Test that images sharing a layer both complete and leave nothing staged."""
        hub.add_image("library/one", "1", [b"base layer", b"one"])
        hub.add_image("library/two", "1", [b"base layer", b"two"])
        results = SyncCoordinator(engine, concurrency=2).run([
            ("one:1", f"{MIRROR}/one:1"),
            ("two:1", f"{MIRROR}/two:1"),
        ])
        assert all(r.ok for r in results)
        assert mirror.has_blob("mirror/one", compute_digest(b"base layer"))
        assert mirror.has_blob("mirror/two", compute_digest(b"base layer"))
        assert len(store) == 0

    def test_transient_failure_isolated(self, engine, hub, mirror):
        hub.add_image("library/alpine", "3.19", [b"layer"])
        mirror.fail_next("head_manifest", OciNetworkError("reset"))
        results = SyncCoordinator(engine, concurrency=1).run([
            ("alpine:3.19", f"{MIRROR}/alpine:3.19"),
            ("alpine:3.19", f"{MIRROR}/alpine:copy"),
        ])
        assert [r.attempts for r in results] == [2, 1]
        assert all(r.ok for r in results)

    def test_invalid_concurrency(self, engine):
        with pytest.raises(ValueError):
            SyncCoordinator(engine, concurrency=0)

    def test_pool_bound_and_out_of_order_completion(self):
        """Test that at most two jobs overlap and results keep input order when the first finishes last."""
        engine = SlowEngine(delays=[0.2] + [0.01] * 7)
        pairs = [(f"app{i}:1", f"{MIRROR}/app{i}:1") for i in range(8)]

        results = SyncCoordinator(engine, concurrency=2).run(pairs)

        assert engine.peak == 2
        assert engine.finished[-1] == "docker.io/library/app0:1"
        assert [r.source for r in results] == [f"docker.io/library/app{i}:1" for i in range(8)]
        assert all(r.ok for r in results)

    def test_single_worker_runs_sequentially(self):
        engine = SlowEngine(delays=[0.01] * 4)
        SyncCoordinator(engine, concurrency=1).run([(f"app{i}:1", f"{MIRROR}/app{i}:1") for i in range(4)])
        assert engine.peak == 1
        assert engine.finished == [f"docker.io/library/app{i}:1" for i in range(4)]


class TestSyncReport:
    """Test aggregate counts and exit codes."""

    def _result(self, state, kind=None):
        return TransferResult("a", "b", state, error_kind=kind)

    def test_all_succeeded(self):
        report = SyncReport((self._result(JobState.SUCCEEDED),) * 2)
        assert (report.succeeded, report.failed, report.exit_code) == (2, 0, 0)

    def test_failure(self):
        report = SyncReport((self._result(JobState.SUCCEEDED),
                             self._result(JobState.FAILED, ErrorKind.NOT_FOUND)))
        assert report.failed == 1
        assert report.exit_code == 1

    def test_cancelled(self):
        report = SyncReport((self._result(JobState.FAILED, ErrorKind.CANCELLED),))
        assert report.cancelled
        assert report.exit_code == 130

    def test_empty(self):
        assert SyncReport(()).exit_code == 0


class TestEndToEnd:
    """Sync through RegistryClient against in-process registries."""

    @pytest.fixture
    def hub_server(self):
        return RegistryServer("registry-1.docker.io", realm="https://auth.docker.io/token")

    @pytest.fixture
    def mirror_server(self):
        return RegistryServer("myregistry.example.com", users={"ci": "s3cret"},
                              realm="https://auth.myregistry.example.com/token")

    @pytest.fixture
    def pool(self, settings, hub_server, mirror_server):
        registry_pool = RegistryPool(settings, {"myregistry.example.com": ("ci", "s3cret")},
                                     transport=route(hub_server, mirror_server))
        yield registry_pool
        registry_pool.close()

    @pytest.fixture
    def coordinator(self, settings, pool, tmp_path):
        store = ContentStore(tmp_path / "staging")
        yield SyncCoordinator(build_engine(settings, pool, store), concurrency=2)
        store.close()

    def test_mirror_alpine(self, coordinator, hub_server, mirror_server):
        """Test alpine:3.19 -> myregistry.example.com/mirror/alpine:3.19 keeps its digest."""
        digest, raw = hub_server.add_image("library/alpine", "3.19", [b"alpine rootfs" * 100])

        results = coordinator.run([
            ("alpine:3.19", f"{MIRROR}/alpine:3.19"),
            ("alpine:does-not-exist", f"{MIRROR}/alpine:missing"),
        ])

        assert results[0].ok
        assert results[0].digest == digest
        assert mirror_server.tags["mirror/alpine"]["3.19"] == digest
        assert mirror_server.manifests["mirror/alpine"][digest][0] == raw
        assert results[1].error_kind is ErrorKind.NOT_FOUND
        assert "missing" not in mirror_server.tags["mirror/alpine"]

    def test_rerun_uploads_nothing(self, coordinator, hub_server, mirror_server):
        hub_server.add_image("library/alpine", "3.19", [b"alpine rootfs"])
        coordinator.run([("alpine:3.19", f"{MIRROR}/alpine:3.19")])
        uploads = mirror_server.count("POST", "/blobs/uploads/")

        results = coordinator.run([("alpine:3.19", f"{MIRROR}/alpine:3.19")])
        assert results[0].ok
        assert results[0].blobs_pushed == 0
        assert mirror_server.count("POST", "/blobs/uploads/") == uploads

    def test_server_errors_retried(self, coordinator, hub_server):
        hub_server.add_image("library/alpine", "3.19", [b"alpine rootfs"])
        hub_server.fail_next("GET /v2/library/alpine/manifests", 503, times=2)
        results = coordinator.run([("alpine:3.19", f"{MIRROR}/alpine:3.19")])
        assert results[0].ok
        assert results[0].attempts == 3

    def test_destination_auth_failure(self, settings, hub_server, mirror_server, tmp_path):
        hub_server.add_image("library/alpine", "3.19", [b"alpine rootfs"])
        pool = RegistryPool(settings, {"myregistry.example.com": ("ci", "wrong")},
                            transport=route(hub_server, mirror_server))
        with ContentStore(tmp_path / "staging") as store:
            results = SyncCoordinator(build_engine(settings, pool, store)).run(
                [("alpine:3.19", f"{MIRROR}/alpine:3.19")])
        pool.close()
        assert results[0].error_kind is ErrorKind.AUTH
        assert results[0].attempts == 1


class TestRegistryPool:
    def test_one_client_per_api_host(self, settings):
        pool = RegistryPool(settings)
        try:
            hub = pool.client_for(parse_reference("alpine"))
            assert hub.host == "registry-1.docker.io"
            assert pool.client_for(parse_reference("index.docker.io/library/nginx")) is hub
            assert pool.client_for(parse_reference("ghcr.io/org/app")) is not hub
        finally:
            pool.close()

    def test_insecure_hosts_use_http(self, settings):
        pool = RegistryPool(settings)
        try:
            assert pool.client_for(parse_reference("localhost:5000/app")).base_url == "http://localhost:5000"
            assert pool.client_for(parse_reference("ghcr.io/org/app")).base_url == "https://ghcr.io"
        finally:
            pool.close()

    def test_lookalike_loopback_host_uses_https(self, settings):
        pool = RegistryPool(settings)
        try:
            client = pool.client_for(parse_reference("localhost.corp.example.com/team/app:v1"))
            assert client.base_url == "https://localhost.corp.example.com"
        finally:
            pool.close()
