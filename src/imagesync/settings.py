"""
Settings and configuration for imagesync.

Centralizes configuration values and provides validation with fail-fast behavior.
Only the CLI layer loads settings from environment variables; the transfer
core receives a Settings instance explicitly.
"""
from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass
from typing import Optional, Tuple

__all__ = ["Settings", "create_settings_from_env"]


@dataclass(frozen=True)
class Settings:
    """
    Configuration settings for an imagesync run.

    Reference Settings:
        default_registry: Registry assumed when a reference names none

    Scheduling Settings:
        concurrency: Parallel transfer jobs (worker pool size)
        blob_concurrency: Parallel blob fetch/push within one job

    Retry Settings:
        max_attempts: Attempts per job for transient failures
        base_delay_s: First backoff delay in seconds
        max_delay_s: Cap for exponential backoff
        rate_limit_delay_s: First backoff delay after HTTP 429
        integrity_max_attempts: Attempts allowed for digest mismatches

    HTTP Settings:
        http_timeout_s: HTTP request timeout in seconds
        insecure_registries: Hosts reached over plain HTTP without TLS checks
        platform: Platform picked from manifest lists (os/arch[/variant])

    Staging Settings:
        cache_dir: Directory for staged blobs (temporary when unset)
        retain_cache: Keep staged blobs after jobs finish
    """
    default_registry: str = "docker.io"
    concurrency: int = 4
    blob_concurrency: int = 3
    max_attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    rate_limit_delay_s: float = 10.0
    integrity_max_attempts: int = 2
    http_timeout_s: float = 30.0
    insecure_registries: Tuple[str, ...] = ()
    platform: str = "linux/amd64"
    cache_dir: Optional[str] = None
    retain_cache: bool = False

    def __post_init__(self):
        """Validate settings on construction."""
        host_pattern = r"^[a-zA-Z0-9.-]+(?::[0-9]+)?$"
        if not self.default_registry or not re.match(host_pattern, self.default_registry):
            raise ValueError(f"Invalid default_registry format: {self.default_registry}")

        for host in self.insecure_registries:
            if not re.match(host_pattern, host):
                raise ValueError(f"Invalid insecure registry host: {host}")

        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.blob_concurrency < 1:
            raise ValueError(f"blob_concurrency must be at least 1, got {self.blob_concurrency}")

        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.integrity_max_attempts < 1:
            raise ValueError(f"integrity_max_attempts must be at least 1, got {self.integrity_max_attempts}")

        if self.base_delay_s < 0 or self.rate_limit_delay_s < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError(f"max_delay_s ({self.max_delay_s}) must be >= base_delay_s ({self.base_delay_s})")

        if self.http_timeout_s <= 0:
            raise ValueError(f"http_timeout_s must be positive, got {self.http_timeout_s}")

        platform_pattern = r"^[a-z0-9]+/[a-z0-9_]+(?:/[a-z0-9]+)?$"
        if not re.match(platform_pattern, self.platform):
            raise ValueError(f"Invalid platform format: {self.platform}. Expected os/arch[/variant].")

    def is_insecure(self, host: str) -> bool:
        """True for configured insecure hosts and loopback registries (any port)."""
        if host in self.insecure_registries:
            return True
        name = host.split(":", 1)[0]
        if name == "localhost":
            return True
        try:
            return ipaddress.ip_address(name).is_loopback
        except ValueError:
            return False


def create_settings_from_env() -> Settings:
    """
    Load settings from environment variables.

    Environment Variables:
        - IMAGESYNC_DEFAULT_REGISTRY (default: docker.io)
        - IMAGESYNC_CONCURRENCY (default: 4)
        - IMAGESYNC_BLOB_CONCURRENCY (default: 3)
        - IMAGESYNC_MAX_ATTEMPTS (default: 5)
        - IMAGESYNC_BASE_DELAY (default: 1.0)
        - IMAGESYNC_MAX_DELAY (default: 30.0)
        - IMAGESYNC_RATE_LIMIT_DELAY (default: 10.0)
        - IMAGESYNC_HTTP_TIMEOUT (default: 30.0)
        - IMAGESYNC_INSECURE_REGISTRIES (comma separated hosts)
        - IMAGESYNC_PLATFORM (default: linux/amd64)
        - IMAGESYNC_CACHE_DIR (optional)
        - IMAGESYNC_RETAIN_CACHE (default: false)

    Returns:
        Settings object with validated configuration

    Raises:
        ValueError: If configuration is invalid

    Note:
        Creates a fresh Settings instance every time (no caching).
    """
    def str_to_bool(value: str) -> bool:
        return value.lower() in ('true', '1', 'yes', 'on')

    def get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        return float(value) if value else default

    def get_int(key: str, default: int) -> int:
        value = os.getenv(key)
        return int(value) if value else default

    insecure = os.getenv("IMAGESYNC_INSECURE_REGISTRIES", "")

    return Settings(
        default_registry=os.getenv("IMAGESYNC_DEFAULT_REGISTRY", "docker.io"),
        concurrency=get_int("IMAGESYNC_CONCURRENCY", 4),
        blob_concurrency=get_int("IMAGESYNC_BLOB_CONCURRENCY", 3),
        max_attempts=get_int("IMAGESYNC_MAX_ATTEMPTS", 5),
        base_delay_s=get_float("IMAGESYNC_BASE_DELAY", 1.0),
        max_delay_s=get_float("IMAGESYNC_MAX_DELAY", 30.0),
        rate_limit_delay_s=get_float("IMAGESYNC_RATE_LIMIT_DELAY", 10.0),
        http_timeout_s=get_float("IMAGESYNC_HTTP_TIMEOUT", 30.0),
        insecure_registries=tuple(h.strip() for h in insecure.split(",") if h.strip()),
        platform=os.getenv("IMAGESYNC_PLATFORM", "linux/amd64"),
        cache_dir=os.getenv("IMAGESYNC_CACHE_DIR") or None,
        retain_cache=str_to_bool(os.getenv("IMAGESYNC_RETAIN_CACHE", "false")),
    )
