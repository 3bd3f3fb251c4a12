"""
Store Client - PostgreSQL-backed cluster object store.

Persists pools, runtime/image config requests, controller config snapshots,
rendered artifacts and event records. Writes to rendered artifacts are
version-checked; finalizer edits are applied as JSON Patches under a row
lock.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import asyncpg

from migrate import run_migrations
from models import (
    ControllerConfigSnapshot,
    ImageConfigRequest,
    Pool,
    RenderedArtifact,
    RuntimeConfigRequest,
)
from patch import PatchTestFailed, apply_patch

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "cluster_objects"


class NotFoundError(Exception):
    """Raised when the requested object does not exist."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name!r} not found")


class ConflictError(Exception):
    """Raised when a write lost an optimistic-concurrency race."""

    def __init__(self, kind: str, name: str, message: str = ""):
        self.kind = kind
        self.name = name
        super().__init__(message or f"{kind} {name!r} was modified concurrently")


class StoreClient:
    """Manages PostgreSQL operations for cluster objects."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Store not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Pools ====================

    async def list_pools(self) -> List[Pool]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM pools ORDER BY name")
            return [Pool.from_row(row) for row in rows]

    async def get_pool(self, name: str) -> Pool:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM pools WHERE name = $1", name)
            if not row:
                raise NotFoundError("Pool", name)
            return Pool.from_row(row)

    async def put_pool(self, name: str, labels: Dict[str, str]) -> Pool:
        """Create a pool or replace its labels."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO pools (name, labels)
                VALUES ($1, $2)
                ON CONFLICT (name) DO UPDATE
                SET labels = EXCLUDED.labels,
                    resource_version = pools.resource_version + 1,
                    updated_at = NOW()
                RETURNING *
                """,
                name,
                json.dumps(labels),
            )
            logger.info(f"Stored pool {name}")
            return Pool.from_row(row)

    async def delete_pool(self, name: str) -> None:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM pools WHERE name = $1 RETURNING name", name
            )
            if deleted is None:
                raise NotFoundError("Pool", name)

    # ==================== Controller config ====================

    async def list_controller_configs(self) -> List[ControllerConfigSnapshot]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM controller_configs ORDER BY name")
            return [ControllerConfigSnapshot.from_row(row) for row in rows]

    async def put_controller_config(
        self, name: str, spec: Dict[str, Any]
    ) -> ControllerConfigSnapshot:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO controller_configs (name, spec)
                VALUES ($1, $2)
                ON CONFLICT (name) DO UPDATE
                SET spec = EXCLUDED.spec,
                    resource_version = controller_configs.resource_version + 1,
                    updated_at = NOW()
                RETURNING *
                """,
                name,
                json.dumps(spec),
            )
            return ControllerConfigSnapshot.from_row(row)

    # ==================== Image config ====================

    async def list_image_config_requests(self) -> List[ImageConfigRequest]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM image_config_requests ORDER BY name")
            return [ImageConfigRequest.from_row(row) for row in rows]

    async def get_image_config_request(self, name: str) -> ImageConfigRequest:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM image_config_requests WHERE name = $1", name
            )
            if not row:
                raise NotFoundError("ImageConfigRequest", name)
            return ImageConfigRequest.from_row(row)

    async def put_image_config_request(
        self, name: str, spec: Dict[str, Any]
    ) -> ImageConfigRequest:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO image_config_requests (name, uid, spec)
                VALUES ($1, $2, $3)
                ON CONFLICT (name) DO UPDATE
                SET spec = EXCLUDED.spec,
                    resource_version = image_config_requests.resource_version + 1,
                    updated_at = NOW()
                RETURNING *
                """,
                name,
                str(uuid.uuid4()),
                json.dumps(spec),
            )
            logger.info(f"Stored image config {name}")
            return ImageConfigRequest.from_row(row)

    # ==================== Runtime config requests ====================

    async def list_runtime_config_requests(self) -> List[RuntimeConfigRequest]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM runtime_config_requests ORDER BY name"
            )
            return [RuntimeConfigRequest.from_row(row) for row in rows]

    async def get_runtime_config_request(self, name: str) -> RuntimeConfigRequest:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM runtime_config_requests WHERE name = $1", name
            )
            if not row:
                raise NotFoundError("RuntimeConfigRequest", name)
            return RuntimeConfigRequest.from_row(row)

    async def create_runtime_config_request(
        self, name: str, spec: Dict[str, Any]
    ) -> RuntimeConfigRequest:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO runtime_config_requests (name, uid, spec)
                VALUES ($1, $2, $3)
                ON CONFLICT (name) DO NOTHING
                RETURNING *
                """,
                name,
                str(uuid.uuid4()),
                json.dumps(spec),
            )
            if row is None:
                raise ConflictError(
                    "RuntimeConfigRequest", name, f"RuntimeConfigRequest {name!r} already exists"
                )
            logger.info(f"Created RuntimeConfigRequest {name}")
            return RuntimeConfigRequest.from_row(row)

    async def update_runtime_config_request_spec(
        self, name: str, spec: Dict[str, Any]
    ) -> RuntimeConfigRequest:
        """Replace the spec and bump the generation."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE runtime_config_requests
                SET spec = $2,
                    generation = generation + 1,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE name = $1
                RETURNING *
                """,
                name,
                json.dumps(spec),
            )
            if row is None:
                raise NotFoundError("RuntimeConfigRequest", name)
            logger.info(
                f"Updated RuntimeConfigRequest {name} to generation {row['generation']}"
            )
            return RuntimeConfigRequest.from_row(row)

    async def delete_runtime_config_request(self, name: str) -> None:
        """
        Delete a request.

        A request without finalizers is removed at once. Otherwise only the
        deletion marker is set; the row goes away when the last finalizer is
        removed.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                deleted = await conn.fetchval(
                    """
                    DELETE FROM runtime_config_requests
                    WHERE name = $1 AND finalizers = '[]'::jsonb
                    RETURNING name
                    """,
                    name,
                )
                if deleted is not None:
                    logger.info(f"Deleted RuntimeConfigRequest {name}")
                    return

                marked = await conn.fetchval(
                    """
                    UPDATE runtime_config_requests
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE name = $1
                    RETURNING name
                    """,
                    name,
                )
                if marked is None:
                    raise NotFoundError("RuntimeConfigRequest", name)
                logger.info(f"Marked RuntimeConfigRequest {name} for deletion")

    async def update_runtime_config_request_status(
        self, request: RuntimeConfigRequest
    ) -> None:
        """Write the status field only."""
        async with self.pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE runtime_config_requests
                SET status = $2,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE name = $1
                RETURNING name
                """,
                request.name,
                json.dumps(request.status.to_dict()),
            )
            if updated is None:
                raise NotFoundError("RuntimeConfigRequest", request.name)

    async def patch_runtime_config_request_finalizers(
        self, name: str, patches: List[Dict[str, Any]]
    ) -> Optional[RuntimeConfigRequest]:
        """
        Apply a JSON Patch to the finalizers field.

        Returns the updated request, or None if removing the last finalizer
        of a request marked for deletion released it.

        Raises:
            NotFoundError: If the request does not exist.
            ConflictError: If a test op of the patch failed.
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT finalizers, deletion_timestamp
                    FROM runtime_config_requests
                    WHERE name = $1
                    FOR UPDATE
                    """,
                    name,
                )
                if row is None:
                    raise NotFoundError("RuntimeConfigRequest", name)

                current = row["finalizers"]
                current = json.loads(current) if isinstance(current, str) else current
                try:
                    patched = apply_patch({"finalizers": current or []}, patches)
                except PatchTestFailed as e:
                    raise ConflictError("RuntimeConfigRequest", name, e.message)

                finalizers = patched["finalizers"]
                if row["deletion_timestamp"] is not None and not finalizers:
                    await conn.execute(
                        "DELETE FROM runtime_config_requests WHERE name = $1", name
                    )
                    logger.info(f"Released RuntimeConfigRequest {name}")
                    return None

                updated = await conn.fetchrow(
                    """
                    UPDATE runtime_config_requests
                    SET finalizers = $2,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE name = $1
                    RETURNING *
                    """,
                    name,
                    json.dumps(finalizers),
                )
                return RuntimeConfigRequest.from_row(updated)

    # ==================== Rendered artifacts ====================

    async def list_artifacts(self, pool: Optional[str] = None) -> List[RenderedArtifact]:
        async with self.pool.acquire() as conn:
            if pool:
                rows = await conn.fetch(
                    "SELECT * FROM rendered_artifacts WHERE pool = $1 ORDER BY name",
                    pool,
                )
            else:
                rows = await conn.fetch("SELECT * FROM rendered_artifacts ORDER BY name")
            return [RenderedArtifact.from_row(row) for row in rows]

    async def get_artifact(self, name: str) -> RenderedArtifact:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM rendered_artifacts WHERE name = $1", name
            )
            if not row:
                raise NotFoundError("RenderedArtifact", name)
            return RenderedArtifact.from_row(row)

    async def create_artifact(self, artifact: RenderedArtifact) -> RenderedArtifact:
        """
        Insert a new artifact.

        Raises:
            ConflictError: If an artifact with the same name already exists.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO rendered_artifacts (
                    name, pool, payload, annotations, owner_references
                )
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (name) DO NOTHING
                RETURNING *
                """,
                artifact.name,
                artifact.pool,
                json.dumps(artifact.payload),
                json.dumps(artifact.annotations),
                json.dumps([o.to_dict() for o in artifact.owner_references]),
            )
            if row is None:
                raise ConflictError(
                    "RenderedArtifact",
                    artifact.name,
                    f"RenderedArtifact {artifact.name!r} already exists",
                )
            logger.debug(f"Created RenderedArtifact {artifact.name}")
            return RenderedArtifact.from_row(row)

    async def update_artifact(self, artifact: RenderedArtifact) -> RenderedArtifact:
        """
        Replace an artifact if its resource version is unchanged.

        Raises:
            NotFoundError: If the artifact does not exist.
            ConflictError: If the stored resource version differs.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE rendered_artifacts
                SET payload = $2,
                    annotations = $3,
                    owner_references = $4,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE name = $1 AND resource_version = $5
                RETURNING *
                """,
                artifact.name,
                json.dumps(artifact.payload),
                json.dumps(artifact.annotations),
                json.dumps([o.to_dict() for o in artifact.owner_references]),
                artifact.resource_version,
            )
            if row is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM rendered_artifacts WHERE name = $1", artifact.name
                )
                if exists is None:
                    raise NotFoundError("RenderedArtifact", artifact.name)
                raise ConflictError("RenderedArtifact", artifact.name)
            logger.debug(f"Updated RenderedArtifact {artifact.name}")
            return RenderedArtifact.from_row(row)

    async def delete_artifact(self, name: str) -> None:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM rendered_artifacts WHERE name = $1 RETURNING name", name
            )
            if deleted is None:
                raise NotFoundError("RenderedArtifact", name)
            logger.info(f"Deleted RenderedArtifact {name}")

    # ==================== Events ====================

    async def record_event(
        self,
        kind: str,
        name: str,
        event_type: str,
        reason: str,
        message: str,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO events (object_kind, object_name, event_type, reason, message)
                VALUES ($1, $2, $3, $4, $5)
                """,
                kind,
                name,
                event_type,
                reason,
                message,
            )
