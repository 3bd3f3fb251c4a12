"""
Sync Engine - converge one request or the image singleton per call.

Two algorithms share the same building blocks:

* request sync renders the storage and runtime configs for every pool a
  RuntimeConfigRequest selects, always writes the resulting artifacts and
  records each artifact as a finalizer on the request;
* image sync renders the registries config for every pool and skips the
  write when content and controller version are already current.

Cached objects are never mutated; each call works on a deep copy.
"""

import copy
import logging
import time
from typing import Dict, List, Optional, Protocol

import envelope
import merger
from finalizers import FinalizerManager
from models import (
    API_VERSION,
    GENERATED_BY_VERSION_ANNOTATION,
    IMAGE_API_VERSION,
    IMAGE_CONFIG_NAME,
    IMAGE_OWNER_KEY,
    Condition,
    ControllerConfigSnapshot,
    ImageConfigRequest,
    OwnerReference,
    Pool,
    RenderedArtifact,
    RuntimeConfigRequest,
    managed_key,
)
from recorder import NORMAL, WARNING, EventRecorder
from resolver import NoMatchingPoolsError, PoolResolver, SelectorError
from retry import retry_on_conflict
from store import NotFoundError, StoreClient
from templates import BaselineRenderer, TemplateError
from validation import validate_runtime_config_request

logger = logging.getLogger(__name__)

REQUEST_KIND = "RuntimeConfigRequest"
IMAGE_KIND = "ImageConfigRequest"


class Repository(Protocol):
    def get(self, name: str): ...

    def list(self) -> list: ...


class SyncEngine:
    """Reconciles runtime config requests and the image config singleton."""

    def __init__(
        self,
        store: StoreClient,
        requests: Repository,
        images: Repository,
        pools: Repository,
        controller_configs: Repository,
        renderer: BaselineRenderer,
        controller_version: str,
        finalizers: Optional[FinalizerManager] = None,
        recorder: Optional[EventRecorder] = None,
        retry_steps: int = 5,
        retry_delay: float = 0.1,
        retry_jitter: float = 1.0,
    ):
        self.store = store
        self.requests = requests
        self.images = images
        self.pools = pools
        self.controller_configs = controller_configs
        self.renderer = renderer
        self.controller_version = controller_version
        self.resolver = PoolResolver(pools)
        self.finalizers = finalizers or FinalizerManager(
            store, retry_steps, retry_delay, retry_jitter
        )
        self.recorder = recorder
        self.retry_steps = retry_steps
        self.retry_delay = retry_delay
        self.retry_jitter = retry_jitter

    async def _retry(self, fn):
        return await retry_on_conflict(
            fn,
            steps=self.retry_steps,
            delay=self.retry_delay,
            jitter=self.retry_jitter,
        )

    async def _event(self, kind: str, name: str, event_type: str, reason: str, message: str):
        if self.recorder is not None:
            await self.recorder.event(kind, name, event_type, reason, message)

    # ==================== Shared helpers ====================

    def _render_baseline(self, pool_name: str) -> Dict[str, str]:
        snapshots: List[ControllerConfigSnapshot] = sorted(
            self.controller_configs.list(), key=lambda s: s.name
        )
        if not snapshots:
            raise TemplateError("controller config list is empty")

        bundle = self.renderer.render(snapshots[0], pool_name)
        missing = [p for p in merger.CATEGORY_PATHS.values() if p not in bundle]
        if missing:
            raise TemplateError(
                f"baseline bundle for pool {pool_name} is missing {', '.join(missing)}"
            )
        return bundle

    def _merge(self, source: str, category: str, update) -> Optional[bytes]:
        """Apply ``update`` to a baseline; None if the baseline is unusable."""
        try:
            return merger.merge_source(source, update)
        except (envelope.EnvelopeError, merger.MergeError) as e:
            logger.warning(f"Skipping {category} config, could not merge baseline: {e}")
            return None

    async def _get_artifact(self, name: str) -> Optional[RenderedArtifact]:
        try:
            return await self.store.get_artifact(name)
        except NotFoundError:
            return None

    async def _commit(
        self,
        existing: Optional[RenderedArtifact],
        name: str,
        pool: Pool,
        payload: Dict,
        owner: OwnerReference,
    ) -> RenderedArtifact:
        artifact = existing or RenderedArtifact(name=name, pool=pool.name)
        artifact.payload = payload
        artifact.annotations = {GENERATED_BY_VERSION_ANNOTATION: self.controller_version}
        artifact.owner_references = [owner]
        if existing is None:
            return await self.store.create_artifact(artifact)
        return await self.store.update_artifact(artifact)

    # ==================== Request path ====================

    async def sync_runtime_config_request(self, key: str) -> None:
        """
        Sync the RuntimeConfigRequest named ``key``.

        Not meant to be called concurrently for the same key.
        """
        start_time = time.monotonic()
        logger.debug(f"Started syncing RuntimeConfigRequest {key!r}")
        try:
            await self._sync_runtime_config_request(key)
        finally:
            logger.debug(
                f"Finished syncing RuntimeConfigRequest {key!r} "
                f"({time.monotonic() - start_time:.3f}s)"
            )

    async def _sync_runtime_config_request(self, key: str) -> None:
        cached = self.requests.get(key)
        if cached is None:
            logger.info(f"RuntimeConfigRequest {key} has been deleted")
            return

        # Deep-copy otherwise we are mutating our cache
        request: RuntimeConfigRequest = copy.deepcopy(cached)

        if request.being_deleted:
            await self.finalizers.cascade_delete(request)
            return

        if request.status.observed_generation >= request.generation:
            return

        valid, message = validate_runtime_config_request(request)
        if not valid:
            await self._sync_status(request, "ValidationFailed", message, observe=True)
            return

        try:
            pools = self.resolver.resolve(request.pool_selector)
        except SelectorError as e:
            await self._sync_status(request, "InvalidSelector", str(e), observe=True)
            return
        except NoMatchingPoolsError:
            message = f"RuntimeConfigRequest {key} does not match any pools"
            logger.info(message)
            await self._sync_status(request, "NoMatchingPools", message, observe=False)
            return

        error: Optional[Exception] = None
        for pool in pools:
            try:
                await self._apply_runtime_config(request, pool)
            except Exception as e:
                logger.error(
                    f"Could not apply RuntimeConfigRequest {key} on pool {pool.name}: {e}"
                )
                error = e
                break
            logger.info(f"Applied RuntimeConfigRequest {key} on pool {pool.name}")

        if error is not None:
            await self._sync_status(
                request,
                "ApplyFailed",
                f"could not create/update RenderedArtifact: {error}",
                observe=False,
            )
            raise error

        await self._sync_status(request, None, "", observe=True)

    async def _apply_runtime_config(self, request: RuntimeConfigRequest, pool: Pool) -> None:
        name = managed_key(pool.name, request.name)
        overrides = request.overrides
        owner = OwnerReference(API_VERSION, REQUEST_KIND, request.name, request.uid)

        async def attempt() -> RenderedArtifact:
            existing = await self._get_artifact(name)
            bundle = self._render_baseline(pool.name)

            files: Dict[str, Optional[bytes]] = {}
            if overrides.touches_storage:
                files[merger.STORAGE_CONFIG_PATH] = self._merge(
                    bundle[merger.STORAGE_CONFIG_PATH],
                    merger.STORAGE,
                    lambda data: merger.update_storage_config(data, overrides),
                )
            if overrides.touches_runtime:
                files[merger.CRIO_CONFIG_PATH] = self._merge(
                    bundle[merger.CRIO_CONFIG_PATH],
                    merger.RUNTIME,
                    lambda data: merger.update_runtime_config(data, overrides),
                )

            payload = merger.build_payload(files)
            return await self._commit(existing, name, pool, payload, owner)

        artifact = await self._retry(attempt)
        await self.finalizers.add_finalizer(request, artifact.name)

    async def _sync_status(
        self,
        request: RuntimeConfigRequest,
        reason: Optional[str],
        message: str,
        observe: bool,
    ) -> None:
        """
        Record the outcome of this attempt in the request status.

        ``observe`` advances observedGeneration so the generation is not
        synced again; failures that should be retried leave it alone.
        """
        if reason is None:
            condition = Condition(type="Success", reason="Applied", message=message)
        else:
            condition = Condition(type="Failure", reason=reason, message=message)

        if observe:
            request.status.observed_generation = request.generation
        request.status.set_condition(condition)

        try:
            await self.store.update_runtime_config_request_status(request)
        except NotFoundError:
            logger.info(f"RuntimeConfigRequest {request.name} vanished before status update")
            return

        if reason is None:
            await self._event(REQUEST_KIND, request.name, NORMAL, "Applied", "RuntimeConfigRequest applied")
        else:
            await self._event(REQUEST_KIND, request.name, WARNING, reason, message)

    # ==================== Image path ====================

    async def sync_image_config(self, key: str) -> None:
        """Sync the image config singleton on every pool."""
        start_time = time.monotonic()
        logger.debug(f"Started syncing ImageConfigRequest {key!r}")
        try:
            await self._sync_image_config()
        finally:
            logger.debug(
                f"Finished syncing ImageConfigRequest {key!r} "
                f"({time.monotonic() - start_time:.3f}s)"
            )

    async def _sync_image_config(self) -> None:
        cached = self.images.get(IMAGE_CONFIG_NAME)
        if cached is None:
            logger.info("ImageConfigRequest doesn't exist or has been deleted")
            return

        image: ImageConfigRequest = copy.deepcopy(cached)

        for pool in sorted(self.pools.list(), key=lambda p: p.name):
            if await self._apply_image_config(image, pool):
                logger.info(f"Applied ImageConfigRequest {image.name} on pool {pool.name}")
                await self._event(
                    IMAGE_KIND, image.name, NORMAL, "Applied",
                    f"registries config written for pool {pool.name}",
                )

    async def _apply_image_config(self, image: ImageConfigRequest, pool: Pool) -> bool:
        """Converge the image artifact for one pool. Returns True if written."""
        name = managed_key(pool.name, IMAGE_OWNER_KEY)
        owner = OwnerReference(IMAGE_API_VERSION, IMAGE_KIND, image.name, image.uid)
        insecure = image.insecure_registries
        blocked = image.blocked_registries

        async def attempt() -> bool:
            bundle = self._render_baseline(pool.name)
            source = bundle[merger.REGISTRIES_CONFIG_PATH]
            if insecure or blocked:
                registries = self._merge(
                    source,
                    merger.REGISTRIES,
                    lambda data: merger.update_registries_config(data, insecure, blocked),
                )
            else:
                registries = self._merge(source, merger.REGISTRIES, lambda data: data)
            payload = merger.build_payload({merger.REGISTRIES_CONFIG_PATH: registries})

            existing = await self._get_artifact(name)
            if (
                existing is not None
                and existing.payload == payload
                and existing.controller_version == self.controller_version
            ):
                return False

            await self._commit(existing, name, pool, payload, owner)
            return True

        return await self._retry(attempt)
