"""
Shared fixtures: an in-memory fake provider and engines backed by memory state.
"""

import itertools
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Headless Qt for the viewer tests when no display is available.
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from terrycore.core.engine import Engine
from terrycore.core.graph import DATA, MANAGED, ResourceDeclaration
from terrycore.core.providers import Provider, ProviderRegistry, ResourceTypePolicy
from terrycore.core.state_store import MemoryBackend, StateStore


class FakeProvider(Provider):
    """
    Keeps objects in a dict and records every call.

    Failures are injected by attribute "name" for create and by external id
    for update and delete.
    """

    def __init__(self, prefix: str = "id", delay: float = 0.0):
        self.prefix = prefix
        self.delay = delay
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_create = set()
        self.fail_update = set()
        self.fail_delete = set()
        self.active = 0
        self.max_active = 0
        self._mutex = threading.Lock()
        self._ids = itertools.count(1)

    @contextmanager
    def _call(self, action: str, subject: str):
        with self._mutex:
            self.calls.append((action, subject))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            yield
        finally:
            with self._mutex:
                self.active -= 1

    def seed(self, external_id: str, **attributes) -> Dict[str, Any]:
        """Put an object in place as if created outside the engine."""
        self.objects[external_id] = dict(attributes, id=external_id)
        return self.objects[external_id]

    def read(self, external_id: str) -> Optional[Dict[str, Any]]:
        with self._call("read", external_id):
            live = self.objects.get(external_id)
            return dict(live) if live is not None else None

    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        name = str(attributes.get("name"))
        with self._call("create", name):
            if name in self.fail_create:
                raise RuntimeError(f"cannot create {name}")
            with self._mutex:
                external_id = f"{self.prefix}-{next(self._ids)}"
            self.objects[external_id] = dict(attributes, id=external_id)
            return external_id, dict(self.objects[external_id])

    def update(self, external_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._call("update", external_id):
            if external_id in self.fail_update or external_id not in self.objects:
                raise RuntimeError(f"cannot update {external_id}")
            self.objects[external_id] = dict(attributes, id=external_id)
            return dict(self.objects[external_id])

    def delete(self, external_id: str) -> None:
        with self._call("delete", external_id):
            if external_id in self.fail_delete:
                raise RuntimeError(f"cannot delete {external_id}")
            self.objects.pop(external_id, None)

    def actions(self, action: str) -> List[str]:
        return [subject for kind, subject in self.calls if kind == action]


def resource(resource_type: str, name: str, depends_on=None, **attributes) -> ResourceDeclaration:
    """Managed declaration whose "name" attribute defaults to its name."""
    attributes.setdefault("name", name)
    return ResourceDeclaration(
        type=resource_type,
        name=name,
        attributes=attributes,
        depends_on=list(depends_on or []),
        mode=MANAGED,
    )


def data_source(resource_type: str, name: str, **attributes) -> ResourceDeclaration:
    return ResourceDeclaration(type=resource_type, name=name, attributes=attributes, mode=DATA)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def server_provider():
    return FakeProvider(prefix="srv")


@pytest.fixture
def lookup_provider():
    return FakeProvider(prefix="img")


@pytest.fixture
def registry(provider, server_provider, lookup_provider):
    """
    test_thing: all fields mutable
    test_server: "image" forces replacement, "password" is sensitive
    test_lookup: data source
    """
    registry = ProviderRegistry()
    registry.register("test_thing", provider, provider_name="test")
    registry.register(
        "test_server",
        server_provider,
        ResourceTypePolicy(
            immutable_fields={"image"},
            computed_fields={"ip"},
            sensitive_fields={"password"},
            schema_version=2,
        ),
        provider_name="test",
    )
    registry.register("test_lookup", lookup_provider, provider_name="test")
    return registry


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def store(backend):
    return StateStore(backend)


@pytest.fixture
def engine(store, registry):
    return Engine(store, registry, parallelism=4)
