"""Pytest configuration and fixtures."""

import copy
from typing import Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

import envelope
from merger import CRIO_CONFIG_PATH, REGISTRIES_CONFIG_PATH, STORAGE_CONFIG_PATH
from models import (
    ControllerConfigSnapshot,
    ImageConfigRequest,
    Pool,
    RenderedArtifact,
    RuntimeConfigRequest,
)
from patch import PatchTestFailed, apply_patch
from store import ConflictError, NotFoundError
from sync import SyncEngine
from templates import BaselineRenderer

STORAGE_BASELINE = b"""[storage]
driver = "overlay"
runroot = "/var/run/containers/storage"

[storage.options]
additionalimagestores = []
"""

CRIO_BASELINE = b"""[crio.runtime]
log_level = "info"
pids_limit = 1024
"""

REGISTRIES_BASELINE = b"""[registries.search]
registries = ["registry.access.redhat.com", "docker.io"]
"""


class FakeStore:
    """In-memory store with the same error semantics as StoreClient."""

    def __init__(self):
        self.requests: Dict[str, RuntimeConfigRequest] = {}
        self.artifacts: Dict[str, RenderedArtifact] = {}
        self.events: List[tuple] = []
        self.status_writes = 0
        self.artifact_writes = 0
        # artifact name -> number of update_artifact calls that should conflict
        self.inject_conflicts: Dict[str, int] = {}

    # Requests

    def add_request(self, request: RuntimeConfigRequest) -> RuntimeConfigRequest:
        self.requests[request.name] = request
        return request

    async def get_runtime_config_request(self, name: str) -> RuntimeConfigRequest:
        if name not in self.requests:
            raise NotFoundError("RuntimeConfigRequest", name)
        return copy.deepcopy(self.requests[name])

    async def update_runtime_config_request_status(self, request: RuntimeConfigRequest) -> None:
        if request.name not in self.requests:
            raise NotFoundError("RuntimeConfigRequest", request.name)
        stored = self.requests[request.name]
        stored.status = copy.deepcopy(request.status)
        stored.resource_version += 1
        self.status_writes += 1

    async def patch_runtime_config_request_finalizers(
        self, name: str, patches: List[dict]
    ) -> Optional[RuntimeConfigRequest]:
        if name not in self.requests:
            raise NotFoundError("RuntimeConfigRequest", name)
        stored = self.requests[name]
        try:
            patched = apply_patch({"finalizers": stored.finalizers}, patches)
        except PatchTestFailed as e:
            raise ConflictError("RuntimeConfigRequest", name, e.message)
        if stored.being_deleted and not patched["finalizers"]:
            del self.requests[name]
            return None
        stored.finalizers = patched["finalizers"]
        stored.resource_version += 1
        return copy.deepcopy(stored)

    # Artifacts

    async def get_artifact(self, name: str) -> RenderedArtifact:
        if name not in self.artifacts:
            raise NotFoundError("RenderedArtifact", name)
        return copy.deepcopy(self.artifacts[name])

    async def list_artifacts(self, pool: Optional[str] = None) -> List[RenderedArtifact]:
        return [
            copy.deepcopy(a)
            for _, a in sorted(self.artifacts.items())
            if pool is None or a.pool == pool
        ]

    async def create_artifact(self, artifact: RenderedArtifact) -> RenderedArtifact:
        if artifact.name in self.artifacts:
            raise ConflictError("RenderedArtifact", artifact.name)
        stored = copy.deepcopy(artifact)
        stored.resource_version = 1
        self.artifacts[artifact.name] = stored
        self.artifact_writes += 1
        return copy.deepcopy(stored)

    async def update_artifact(self, artifact: RenderedArtifact) -> RenderedArtifact:
        if artifact.name not in self.artifacts:
            raise NotFoundError("RenderedArtifact", artifact.name)
        if self.inject_conflicts.get(artifact.name, 0) > 0:
            self.inject_conflicts[artifact.name] -= 1
            raise ConflictError("RenderedArtifact", artifact.name)
        current = self.artifacts[artifact.name]
        if current.resource_version != artifact.resource_version:
            raise ConflictError("RenderedArtifact", artifact.name)
        stored = copy.deepcopy(artifact)
        stored.resource_version = current.resource_version + 1
        self.artifacts[artifact.name] = stored
        self.artifact_writes += 1
        return copy.deepcopy(stored)

    async def delete_artifact(self, name: str) -> None:
        if name not in self.artifacts:
            raise NotFoundError("RenderedArtifact", name)
        del self.artifacts[name]

    # Events

    async def record_event(self, kind, name, event_type, reason, message) -> None:
        self.events.append((kind, name, event_type, reason, message))


class FakeRepository:
    """Read-only repository over a fixed set of objects."""

    def __init__(self, objects=None):
        self.objects = {o.name: o for o in objects or []}

    def get(self, name: str):
        return self.objects.get(name)

    def list(self) -> list:
        return list(self.objects.values())


class StoreRequests:
    """Request repository that always sees the fake store's current rows."""

    def __init__(self, store: FakeStore):
        self.store = store

    def get(self, name: str):
        return self.store.requests.get(name)

    def list(self) -> list:
        return list(self.store.requests.values())


class StaticRenderer(BaselineRenderer):
    """Returns the same baseline bundle for every pool."""

    def __init__(self, bundle: Optional[Dict[str, str]] = None):
        self.bundle = bundle or {
            STORAGE_CONFIG_PATH: envelope.encode(STORAGE_BASELINE),
            CRIO_CONFIG_PATH: envelope.encode(CRIO_BASELINE),
            REGISTRIES_CONFIG_PATH: envelope.encode(REGISTRIES_BASELINE),
        }
        self.calls: List[str] = []

    def render(self, snapshot, pool_name):
        self.calls.append(pool_name)
        return dict(self.bundle)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def pools():
    return FakeRepository(
        [
            Pool("master", {"pool": "master"}),
            Pool("worker", {"pool": "worker"}),
        ]
    )


@pytest.fixture
def controller_configs():
    return FakeRepository(
        [ControllerConfigSnapshot("machine-config-controller", {"releaseImage": "x"})]
    )


@pytest.fixture
def images():
    return FakeRepository()


@pytest.fixture
def renderer():
    return StaticRenderer()


@pytest.fixture
def engine(fake_store, images, pools, controller_configs, renderer):
    return SyncEngine(
        store=fake_store,
        requests=StoreRequests(fake_store),
        images=images,
        pools=pools,
        controller_configs=controller_configs,
        renderer=renderer,
        controller_version="v1.0.0",
        retry_delay=0,
    )


@pytest.fixture
def sample_request():
    """A runtime config request selecting the worker pool."""
    return RuntimeConfigRequest(
        name="set-log-level",
        uid="8f6c1c49-2c4e-4a43-9d6c-7f1b0c3d7e21",
        generation=1,
        spec={
            "poolSelector": {"matchLabels": {"pool": "worker"}},
            "containerRuntimeConfig": {"logLevel": "debug", "pidsLimit": 2048},
        },
    )


@pytest.fixture
def sample_image():
    return ImageConfigRequest(
        uid="0d6b2f33-1a7e-4c4e-8d0e-5b9f3a2c1e44",
        spec={
            "registrySources": {
                "insecureRegistries": ["registry.local:5000"],
                "blockedRegistries": ["docker.io"],
            }
        },
    )
