"""
Tests for settings module.

Tests settings validation and environment variable loading.
"""
from __future__ import annotations

import pytest

from imagesync.settings import Settings, create_settings_from_env


class TestSettings:
    """Test Settings dataclass validation."""

    def test_defaults(self):
        """Test default values."""
        settings = Settings()
        assert settings.default_registry == "docker.io"
        assert settings.concurrency == 4
        assert settings.blob_concurrency == 3
        assert settings.max_attempts == 5
        assert settings.integrity_max_attempts == 2
        assert settings.platform == "linux/amd64"
        assert settings.cache_dir is None
        assert settings.retain_cache is False

    @pytest.mark.parametrize("kwargs", [
        {"default_registry": ""},
        {"default_registry": "https://docker.io"},
        {"insecure_registries": ("bad host",)},
        {"concurrency": 0},
        {"blob_concurrency": 0},
        {"max_attempts": 0},
        {"integrity_max_attempts": 0},
        {"base_delay_s": -1.0},
        {"base_delay_s": 5.0, "max_delay_s": 1.0},
        {"http_timeout_s": 0},
        {"platform": "linux"},
        {"platform": "Linux/AMD64"},
    ])
    def test_invalid_values(self, kwargs):
        """Test that invalid settings fail fast."""
        with pytest.raises(ValueError):
            Settings(**kwargs)

    def test_is_insecure(self):
        settings = Settings(insecure_registries=("registry.lan:5000",))
        assert settings.is_insecure("registry.lan:5000")
        assert settings.is_insecure("localhost:5000")
        assert settings.is_insecure("127.0.0.1:5000")
        assert not settings.is_insecure("ghcr.io")
        assert settings.is_insecure("localhost")
        assert settings.is_insecure("127.0.0.2:5000")

    def test_is_insecure_requires_exact_loopback_host(self):
        """Test that remote hosts merely starting with a loopback name stay on TLS."""
        settings = Settings()
        assert not settings.is_insecure("localhost.corp.example.com")
        assert not settings.is_insecure("localhost-registry.io")
        assert not settings.is_insecure("127.0.0.1.nip.io")
        assert not settings.is_insecure("registry.lan:5000")


class TestCreateSettingsFromEnv:
    """Test environment variable loading."""

    def test_defaults_without_env(self):
        assert create_settings_from_env() == Settings()

    def test_reads_environment(self, monkeypatch):
        """Test that every IMAGESYNC_* variable is honoured."""
        monkeypatch.setenv("IMAGESYNC_DEFAULT_REGISTRY", "registry.internal:5000")
        monkeypatch.setenv("IMAGESYNC_CONCURRENCY", "8")
        monkeypatch.setenv("IMAGESYNC_BLOB_CONCURRENCY", "2")
        monkeypatch.setenv("IMAGESYNC_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("IMAGESYNC_BASE_DELAY", "0.5")
        monkeypatch.setenv("IMAGESYNC_MAX_DELAY", "4")
        monkeypatch.setenv("IMAGESYNC_RATE_LIMIT_DELAY", "2")
        monkeypatch.setenv("IMAGESYNC_HTTP_TIMEOUT", "12")
        monkeypatch.setenv("IMAGESYNC_INSECURE_REGISTRIES", "a.lan:5000, b.lan")
        monkeypatch.setenv("IMAGESYNC_PLATFORM", "linux/arm64/v8")
        monkeypatch.setenv("IMAGESYNC_CACHE_DIR", "/tmp/imagesync-cache")
        monkeypatch.setenv("IMAGESYNC_RETAIN_CACHE", "yes")

        settings = create_settings_from_env()
        assert settings.default_registry == "registry.internal:5000"
        assert settings.concurrency == 8
        assert settings.blob_concurrency == 2
        assert settings.max_attempts == 3
        assert settings.base_delay_s == 0.5
        assert settings.max_delay_s == 4.0
        assert settings.rate_limit_delay_s == 2.0
        assert settings.http_timeout_s == 12.0
        assert settings.insecure_registries == ("a.lan:5000", "b.lan")
        assert settings.platform == "linux/arm64/v8"
        assert settings.cache_dir == "/tmp/imagesync-cache"
        assert settings.retain_cache is True

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("IMAGESYNC_CONCURRENCY", "many")
        with pytest.raises(ValueError):
            create_settings_from_env()

    def test_fresh_instance_each_call(self, monkeypatch):
        first = create_settings_from_env()
        monkeypatch.setenv("IMAGESYNC_CONCURRENCY", "2")
        assert create_settings_from_env().concurrency == 2
        assert first.concurrency == 4
