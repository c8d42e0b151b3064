"""
Registry authentication helpers.

Credentials come in as a ``{host: (username, password)}`` mapping. Bearer
tokens obtained from a registry's token service are cached in a
``TokenCache`` owned by the caller and shared between clients.
"""
from __future__ import annotations

import base64
import json
import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

Credentials = Tuple[str, str]

__all__ = ["Credentials", "Challenge", "parse_challenge", "TokenCache", "DockerAuth"]


@dataclass(frozen=True)
class Challenge:
    """Parsed ``WWW-Authenticate`` header."""
    scheme: str
    realm: Optional[str] = None
    service: Optional[str] = None
    scope: Optional[str] = None


def parse_challenge(header: str) -> Optional[Challenge]:
    """
    Parse a ``WWW-Authenticate`` header.

    Format: ``Bearer realm="...",service="...",scope="..."`` or ``Basic realm="..."``

    Returns:
        Challenge, or None when the header is empty or has an unknown scheme
    """
    if not header:
        return None
    scheme, _, params = header.strip().partition(" ")
    scheme = scheme.lower()
    if scheme not in ("bearer", "basic"):
        return None
    values = {m.group(1).lower(): m.group(2) for m in re.finditer(r'(\w+)="([^"]*)"', params)}
    return Challenge(
        scheme=scheme,
        realm=values.get("realm"),
        service=values.get("service"),
        scope=values.get("scope"),
    )


class TokenCache:
    """
    Bearer token cache keyed by ``(host, scope)``.

    Refreshes are serialized per key: when several threads hit a 401 with
    the same stale token, only the first one calls the token endpoint and
    the others reuse its result.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, expiry_margin_s: float = 30.0):
        self._clock = clock
        self._margin = expiry_margin_s
        self._tokens: Dict[Tuple[str, str], Tuple[str, float]] = {}
        # key -> (lock, number of threads refreshing it); dropped when unused
        self._locks: Dict[Tuple[str, str], Tuple[threading.Lock, int]] = {}
        self._guard = threading.Lock()
        self.refresh_count = 0

    @contextmanager
    def _serialized(self, key: Tuple[str, str]) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                lock, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def get(self, host: str, scope: str) -> Optional[str]:
        """Return a cached, unexpired token or None."""
        with self._guard:
            entry = self._tokens.get((host, scope))
        if entry is None:
            return None
        token, expiry = entry
        if self._clock() >= expiry - self._margin:
            return None
        return token

    def refresh(self, host: str, scope: str,
                fetch: Callable[[], Tuple[str, float]],
                stale: Optional[str] = None) -> str:
        """
        Get a token, calling ``fetch`` at most once per stale generation.

        Args:
            host: Registry host
            scope: Token scope (``repository:<name>:<actions>``)
            fetch: Returns ``(token, expires_in_seconds)``
            stale: Token the caller saw rejected; a cached token different
                   from it is returned without fetching

        Returns:
            Bearer token
        """
        key = (host, scope)
        with self._serialized(key):
            current = self.get(host, scope)
            if current is not None and current != stale:
                return current
            token, expires_in = fetch()
            self.refresh_count += 1
            with self._guard:
                self._tokens[key] = (token, self._clock() + expires_in)
            logger.debug(f"Refreshed token for {host} scope={scope!r} (expires in {expires_in}s)")
            return token

    def invalidate(self, host: str, scope: str) -> None:
        with self._guard:
            self._tokens.pop((host, scope), None)


class DockerAuth:
    """Read registry credentials from a Docker config file."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path.home() / ".docker" / "config.json"
        self._config_cache: Optional[dict] = None
        self._config_mtime: Optional[float] = None

    def get_credentials(self, registry: str) -> Optional[Credentials]:
        """
        Get credentials for registry from Docker config.

        Returns: (username, password) or None if not found
        """
        config = self._load_config()
        if not config:
            return None

        auths = config.get("auths", {})
        candidates = [registry, f"https://{registry}", f"http://{registry}"]
        if registry == "docker.io":
            candidates += ["https://index.docker.io/v1/", "index.docker.io", "registry-1.docker.io"]

        for key in candidates:
            if key not in auths:
                continue
            auth_entry = auths[key]

            # Handle base64 encoded auth field
            if "auth" in auth_entry:
                try:
                    decoded = base64.b64decode(auth_entry["auth"]).decode()
                except (ValueError, UnicodeDecodeError) as e:
                    logger.debug(f"Ignoring undecodable auth entry for {key}: {e}")
                else:
                    if ":" in decoded:
                        username, password = decoded.split(":", 1)
                        return (username, password)

            # Handle username/password fields
            if "username" in auth_entry and "password" in auth_entry:
                return (auth_entry["username"], auth_entry["password"])

        return None

    def _load_config(self) -> Optional[dict]:
        """Load Docker config with caching and mtime checking."""
        if not self.config_path.exists():
            return None

        try:
            current_mtime = self.config_path.stat().st_mtime

            # Use cached version if file hasn't changed
            if (self._config_cache is not None and
                    self._config_mtime is not None and
                    current_mtime == self._config_mtime):
                return self._config_cache

            with open(self.config_path, 'r') as f:
                config = json.load(f)

            self._config_cache = config
            self._config_mtime = current_mtime
            return config

        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Failed to read Docker config {self.config_path}: {e}")
            return None
