"""Root pytest configuration for imagesync tests."""
import os
import threading

import pytest

from imagesync.settings import Settings
from imagesync.storage.content_store import ContentStore
from imagesync.transfer import RetryPolicy, TransferEngine

from tests.storage.fakes import FakeRegistry, FakeRegistryPool


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Isolate tests from the caller's IMAGESYNC_* variables and Docker config."""
    for key in list(os.environ):
        if key.startswith("IMAGESYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def settings():
    """Settings with zero backoff so retry tests run instantly."""
    return Settings(base_delay_s=0.0, max_delay_s=0.0, rate_limit_delay_s=0.0)


@pytest.fixture
def policy():
    return RetryPolicy(base_delay_s=0.0, max_delay_s=0.0, rate_limit_delay_s=0.0, max_rate_limit_delay_s=0.0)


@pytest.fixture
def store(tmp_path):
    """Content store in a per-test directory."""
    content_store = ContentStore(tmp_path / "store")
    yield content_store
    content_store.close()


@pytest.fixture
def hub():
    """Fake Docker Hub (references on docker.io resolve to this host)."""
    return FakeRegistry("registry-1.docker.io")


@pytest.fixture
def mirror():
    """Fake destination registry."""
    return FakeRegistry("myregistry.example.com")


@pytest.fixture
def registries(hub, mirror):
    return FakeRegistryPool(hub, mirror)


@pytest.fixture
def cancel_event():
    return threading.Event()


@pytest.fixture
def engine(registries, store, policy, cancel_event):
    """Transfer engine wired to the fake registries."""
    return TransferEngine(registries.client_for, store, policy=policy,
                          blob_concurrency=3, cancel_event=cancel_event)
