"""
Finalizer Manager - record and drain the artifacts a request owns.

Every artifact created for a request is listed in the request's finalizers.
On deletion the list is drained one entry per call: delete the artifact,
then remove exactly that entry with a minimal patch.
"""

import logging
from typing import Optional

from models import RuntimeConfigRequest
from patch import make_list_patch
from retry import retry_on_conflict
from store import NotFoundError, StoreClient

logger = logging.getLogger(__name__)


class FinalizerManager:
    """Adds, removes and drains finalizers on runtime config requests."""

    def __init__(
        self,
        store: StoreClient,
        retry_steps: int = 5,
        retry_delay: float = 0.1,
        retry_jitter: float = 1.0,
    ):
        self.store = store
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

    async def add_finalizer(self, request: RuntimeConfigRequest, name: str) -> None:
        """
        Append ``name`` to the request's finalizers if missing.

        ``request`` is updated in place with the stored list.
        """
        if name in request.finalizers:
            return

        async def attempt() -> Optional[RuntimeConfigRequest]:
            latest = await self.store.get_runtime_config_request(request.name)
            if name in latest.finalizers:
                return latest
            patch = make_list_patch(
                "/finalizers", latest.finalizers, latest.finalizers + [name]
            )
            return await self.store.patch_runtime_config_request_finalizers(
                request.name, patch
            )

        updated = await self._retry(attempt)
        if updated is not None:
            request.finalizers = updated.finalizers
        logger.debug(f"Added finalizer {name} to RuntimeConfigRequest {request.name}")

    async def remove_finalizer(self, request: RuntimeConfigRequest, name: str) -> None:
        """
        Remove one occurrence of ``name`` from the request's finalizers.

        A request that no longer exists counts as done.
        """

        async def attempt() -> Optional[RuntimeConfigRequest]:
            try:
                latest = await self.store.get_runtime_config_request(request.name)
            except NotFoundError:
                return None
            if name not in latest.finalizers:
                return latest
            desired = list(latest.finalizers)
            desired.remove(name)
            patch = make_list_patch("/finalizers", latest.finalizers, desired)
            try:
                return await self.store.patch_runtime_config_request_finalizers(
                    request.name, patch
                )
            except NotFoundError:
                return None

        updated = await self._retry(attempt)
        request.finalizers = updated.finalizers if updated is not None else []

    async def cascade_delete(self, request: RuntimeConfigRequest) -> None:
        """
        Drain the first finalizer of a request being deleted.

        Deletes the artifact it names (tolerating absence) and then removes
        the entry. Further entries are drained by later calls.
        """
        if not request.finalizers:
            return

        artifact_name = request.finalizers[0]
        try:
            await self.store.delete_artifact(artifact_name)
        except NotFoundError:
            logger.debug(f"RenderedArtifact {artifact_name} already deleted")

        await self.remove_finalizer(request, artifact_name)
        logger.info(
            f"Removed RenderedArtifact {artifact_name} for RuntimeConfigRequest "
            f"{request.name}, {len(request.finalizers)} finalizer(s) left"
        )
