# Fake implementations for testing

from .fake_registry import FakeRegistry, FakeRegistryPool, build_index, build_manifest
from .registry_server import RegistryServer, route

__all__ = ["FakeRegistry", "FakeRegistryPool", "RegistryServer", "build_index", "build_manifest", "route"]
