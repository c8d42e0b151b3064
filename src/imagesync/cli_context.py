"""
CLI Context for managing application dependencies.

Holds the settings, credentials, content store and registry clients for one
CLI command, so the transfer core never reads the environment itself.
"""
from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from .coordinator import RegistryPool, SyncCoordinator, build_engine
from .settings import Settings, create_settings_from_env
from .storage.auth import Credentials, DockerAuth
from .storage.content_store import ContentStore


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Credentials are gathered per registry host from the Docker config file;
    ``IMAGESYNC_USERNAME``/``IMAGESYNC_PASSWORD`` override them for the
    destination registries.
    """
    settings: Settings
    docker_auth: DockerAuth = field(default_factory=DockerAuth)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    _store: Optional[ContentStore] = None
    _pool: Optional[RegistryPool] = None

    @classmethod
    def from_env(cls) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        return cls(settings=create_settings_from_env())

    def credentials_for(self, sources: Iterable[str], destinations: Iterable[str]) -> Dict[str, Credentials]:
        """Build the ``{registry: (username, password)}`` mapping for the given hosts."""
        credentials: Dict[str, Credentials] = {}
        for host in set(sources) | set(destinations):
            found = self.docker_auth.get_credentials(host)
            if found:
                credentials[host] = found

        username = os.getenv("IMAGESYNC_USERNAME")
        password = os.getenv("IMAGESYNC_PASSWORD")
        if username and password:
            for host in destinations:
                credentials[host] = (username, password)
        return credentials

    @property
    def store(self) -> ContentStore:
        if self._store is None:
            self._store = ContentStore(self.settings.cache_dir, retain=self.settings.retain_cache)
        return self._store

    def registry_pool(self, credentials: Dict[str, Credentials]) -> RegistryPool:
        if self._pool is None:
            self._pool = RegistryPool(self.settings, credentials, cancel_event=self.cancel_event)
        return self._pool

    def coordinator(self, credentials: Dict[str, Credentials]) -> SyncCoordinator:
        engine = build_engine(self.settings, self.registry_pool(credentials), self.store, self.cancel_event)
        return SyncCoordinator(engine, concurrency=self.settings.concurrency,
                               default_registry=self.settings.default_registry)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
        if self._store is not None:
            self._store.close()
