"""
Runtime Config Controller - watch-driven work queues.

Similar to Kubernetes controllers: informer notifications are turned into
keys on rate-limited queues, and workers hand each key to the sync engine.
Runtime config requests are synced by several workers; the image config
singleton has a queue and a single worker of its own.
"""

import asyncio
import copy
import logging
from typing import Awaitable, Callable, List, Optional

from config import ControllerConfig
from events import EventHandlers, WatchEvent
from finalizers import FinalizerManager
from informer import Informer
from models import IMAGE_CONFIG_NAME, RuntimeConfigRequest
from sync import SyncEngine
from workqueue import RateLimitingQueue, default_controller_rate_limiter

logger = logging.getLogger(__name__)

SyncFunc = Callable[[str], Awaitable[None]]


class Controller:
    """
    Dispatches watch notifications to the sync engine.

    Every failure is converted into a queue decision: retried with backoff
    up to ``max_retries`` times, then parked for ``requeue_cooldown``
    seconds before being tried again from scratch.
    """

    def __init__(
        self,
        engine: SyncEngine,
        finalizers: FinalizerManager,
        requests: Informer,
        images: Informer,
        pools: Informer,
        controller_configs: Informer,
        config: Optional[ControllerConfig] = None,
    ):
        self.engine = engine
        self.finalizers = finalizers
        self.requests = requests
        self.config = config or ControllerConfig()
        self.queue = self._new_queue("runtimeconfigrequest")
        self.image_queue = self._new_queue("imageconfigrequest")
        self._workers: List[asyncio.Task] = []

        requests.add_event_handler(
            EventHandlers(
                on_add=self._add_request,
                on_update=self._update_request,
                on_delete=self._delete_request,
            )
        )
        images.add_event_handler(
            EventHandlers(
                on_add=self._image_changed,
                on_update=self._image_changed,
                on_delete=self._image_changed,
            )
        )
        pools.add_event_handler(
            EventHandlers(
                on_add=self._pool_changed,
                on_update=self._pool_changed,
                on_delete=self._pool_changed,
            )
        )
        controller_configs.add_event_handler(
            EventHandlers(
                on_add=self._image_changed,
                on_update=self._image_changed,
                on_delete=self._image_changed,
            )
        )

    def _new_queue(self, name: str) -> RateLimitingQueue:
        limiter = default_controller_rate_limiter(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            qps=self.config.queue_qps,
            burst=self.config.queue_burst,
        )
        return RateLimitingQueue(name, limiter)

    # ==================== Watch handlers ====================

    def enqueue_request(self, request: RuntimeConfigRequest) -> None:
        self.queue.add(request.name)

    def enqueue_image(self) -> None:
        self.image_queue.add(IMAGE_CONFIG_NAME)

    async def _add_request(self, event: WatchEvent) -> None:
        logger.debug(f"Adding RuntimeConfigRequest {event.obj.name}")
        self.enqueue_request(event.obj)

    async def _update_request(self, event: WatchEvent) -> None:
        new: RuntimeConfigRequest = event.obj
        old: Optional[RuntimeConfigRequest] = event.old

        # Status and finalizer writes made by the sync itself come back as
        # updates; only spec changes, deletions and resyncs need a sync.
        if (
            old is None
            or old.generation != new.generation
            or new.being_deleted
            or old.resource_version == new.resource_version
        ):
            logger.debug(f"Updating RuntimeConfigRequest {new.name}")
            self.enqueue_request(new)

    async def _delete_request(self, event: WatchEvent) -> None:
        # Live object or tombstone; never edit the cached copy
        request: RuntimeConfigRequest = copy.deepcopy(event.obj)
        logger.debug(f"Deleting RuntimeConfigRequest {request.name}")
        try:
            await self.finalizers.cascade_delete(request)
        except Exception as e:
            logger.error(
                f"Could not clean up after RuntimeConfigRequest {request.name}: {e}",
                exc_info=True,
            )

    async def _image_changed(self, event: WatchEvent) -> None:
        logger.debug(f"{event.kind} {event.obj.name} {event.event_type.value}")
        self.enqueue_image()

    async def _pool_changed(self, event: WatchEvent) -> None:
        logger.debug(f"Pool {event.obj.name} {event.event_type.value}")
        for request in self.requests.list():
            self.enqueue_request(request)
        self.enqueue_image()

    # ==================== Workers ====================

    async def _worker(self, queue: RateLimitingQueue, sync: SyncFunc) -> None:
        while await self._process_next_item(queue, sync):
            pass

    async def _process_next_item(self, queue: RateLimitingQueue, sync: SyncFunc) -> bool:
        """Process one key. Returns False once the queue is shut down."""
        key, shutdown = await queue.get()
        if shutdown:
            return False

        try:
            error: Optional[Exception] = None
            try:
                await sync(key)
            except Exception as e:
                error = e
            self._handle_error(queue, error, key)
        finally:
            queue.done(key)
        return True

    def _handle_error(
        self, queue: RateLimitingQueue, error: Optional[Exception], key: str
    ) -> None:
        if error is None:
            queue.forget(key)
            return

        requeues = queue.num_requeues(key)
        if requeues < self.config.max_retries:
            logger.warning(
                f"Error syncing {queue.name} {key} (attempt {requeues + 1}): {error}"
            )
            queue.add_rate_limited(key)
            return

        logger.error(
            f"Dropping {queue.name} {key} out of the queue after {requeues} "
            f"retries, trying again in {self.config.requeue_cooldown}s: {error}",
            exc_info=error,
        )
        queue.forget(key)
        queue.add_after(key, self.config.requeue_cooldown)

    async def start(self, workers: Optional[int] = None) -> None:
        """Run the workers until ``stop`` is called."""
        workers = workers or self.config.workers
        logger.info(f"Starting Runtime Config Controller with {workers} worker(s)")

        for _ in range(workers):
            self._workers.append(
                asyncio.create_task(
                    self._worker(self.queue, self.engine.sync_runtime_config_request)
                )
            )
        self._workers.append(
            asyncio.create_task(self._worker(self.image_queue, self.engine.sync_image_config))
        )

        await asyncio.gather(*self._workers)
        logger.info("All workers exited")

    async def stop(self) -> None:
        """Stop intake and wait for in-flight keys to finish."""
        logger.info("Stopping Runtime Config Controller")
        await self.queue.shut_down()
        await self.image_queue.shut_down()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
