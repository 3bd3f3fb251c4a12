"""
Cluster object models.

Dataclass views over the rows the store persists and the JSON objects the
watch feed delivers. Both sources are accepted by ``from_row``: asyncpg
returns JSONB columns as strings, notification payloads embed them as
objects.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from quantity import is_zero

IMAGE_CONFIG_NAME = "cluster"
IMAGE_OWNER_KEY = "image"

GENERATED_BY_VERSION_ANNOTATION = (
    "machineconfiguration.openshift.io/generated-by-controller-version"
)

API_VERSION = "machineconfiguration.openshift.io/v1"
IMAGE_API_VERSION = "config.openshift.io/v1"


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def managed_key(pool_name: str, owner: str) -> str:
    """Deterministic artifact name for a (pool, owner) pair."""
    return f"99-{pool_name}-{owner}"


def utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Condition:
    """Outcome of the latest sync attempt."""

    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_transition_time: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data.get("status", "True"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


@dataclass
class RequestStatus:
    observed_generation: int = 0
    conditions: List[Condition] = field(default_factory=list)

    def set_condition(self, condition: Condition) -> None:
        """Replace any previous outcome with ``condition``."""
        self.conditions = [condition]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RequestStatus":
        data = data or {}
        return cls(
            observed_generation=data.get("observedGeneration", 0),
            conditions=[Condition.from_dict(c) for c in data.get("conditions", [])],
        )


@dataclass
class RuntimeOverrides:
    """User overrides for the container runtime configuration."""

    overlay_size: str = ""
    log_level: str = ""
    pids_limit: int = 0
    log_size_max: str = ""

    @property
    def touches_storage(self) -> bool:
        return not is_zero(self.overlay_size)

    @property
    def touches_runtime(self) -> bool:
        return bool(self.log_level or self.pids_limit) or not is_zero(self.log_size_max)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RuntimeOverrides":
        data = data or {}
        return cls(
            overlay_size=str(data.get("overlaySize") or ""),
            log_level=data.get("logLevel") or "",
            pids_limit=int(data.get("pidsLimit") or 0),
            log_size_max=str(data.get("logSizeMax") or ""),
        )


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
        )


@dataclass
class RuntimeConfigRequest:
    """User request for runtime configuration overrides on selected pools."""

    name: str
    uid: str = ""
    generation: int = 1
    spec: Dict[str, Any] = field(default_factory=dict)
    status: RequestStatus = field(default_factory=RequestStatus)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[Any] = None
    resource_version: int = 0

    @property
    def pool_selector(self) -> Optional[Dict[str, Any]]:
        return self.spec.get("poolSelector")

    @property
    def overrides(self) -> RuntimeOverrides:
        return RuntimeOverrides.from_dict(self.spec.get("containerRuntimeConfig"))

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RuntimeConfigRequest":
        return cls(
            name=row["name"],
            uid=str(row.get("uid") or ""),
            generation=row.get("generation", 1),
            spec=_load_json(row.get("spec"), {}),
            status=RequestStatus.from_dict(_load_json(row.get("status"), {})),
            finalizers=list(_load_json(row.get("finalizers"), [])),
            deletion_timestamp=row.get("deletion_timestamp"),
            resource_version=row.get("resource_version", 0),
        )


@dataclass
class ImageConfigRequest:
    """Cluster-wide registry allow/deny lists, applied to every pool."""

    name: str = IMAGE_CONFIG_NAME
    uid: str = ""
    spec: Dict[str, Any] = field(default_factory=dict)
    resource_version: int = 0

    @property
    def insecure_registries(self) -> List[str]:
        sources = self.spec.get("registrySources") or {}
        return list(sources.get("insecureRegistries") or [])

    @property
    def blocked_registries(self) -> List[str]:
        sources = self.spec.get("registrySources") or {}
        return list(sources.get("blockedRegistries") or [])

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ImageConfigRequest":
        return cls(
            name=row["name"],
            uid=str(row.get("uid") or ""),
            spec=_load_json(row.get("spec"), {}),
            resource_version=row.get("resource_version", 0),
        )


@dataclass
class Pool:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Pool":
        return cls(
            name=row["name"],
            labels=dict(_load_json(row.get("labels"), {})),
            resource_version=row.get("resource_version", 0),
        )


@dataclass
class ControllerConfigSnapshot:
    name: str
    spec: Dict[str, Any] = field(default_factory=dict)
    resource_version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ControllerConfigSnapshot":
        return cls(
            name=row["name"],
            spec=_load_json(row.get("spec"), {}),
            resource_version=row.get("resource_version", 0),
        )


@dataclass
class RenderedArtifact:
    """Converged configuration for one pool and one owner."""

    name: str
    pool: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)
    resource_version: int = 0

    @property
    def controller_version(self) -> Optional[str]:
        return self.annotations.get(GENERATED_BY_VERSION_ANNOTATION)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RenderedArtifact":
        return cls(
            name=row["name"],
            pool=row.get("pool", ""),
            payload=_load_json(row.get("payload"), {}),
            annotations=dict(_load_json(row.get("annotations"), {})),
            owner_references=[
                OwnerReference.from_dict(o)
                for o in _load_json(row.get("owner_references"), [])
            ],
            resource_version=row.get("resource_version", 0),
        )
