"""Unit tests for controller.py - Watch-driven work queues."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from config import ControllerConfig
from controller import Controller
from events import EventType, Live, Tombstone, WatchEvent
from informer import Informer
from models import ControllerConfigSnapshot, ImageConfigRequest, Pool, RuntimeConfigRequest


def make_informer(kind, from_row, objects=None):
    return Informer(kind, AsyncMock(return_value=list(objects or [])), from_row)


async def drain(queue):
    """Return every key currently waiting on a queue."""
    keys = []
    while len(queue):
        key, _ = await queue.get()
        queue.done(key)
        keys.append(key)
    return keys


@pytest.mark.asyncio
class TestController:
    """Tests for Controller class."""

    @pytest.fixture
    def requests(self):
        return make_informer(
            "RuntimeConfigRequest",
            RuntimeConfigRequest.from_row,
            [RuntimeConfigRequest("a"), RuntimeConfigRequest("b")],
        )

    @pytest.fixture
    def images(self):
        return make_informer("ImageConfigRequest", ImageConfigRequest.from_row)

    @pytest.fixture
    def pools(self):
        return make_informer("Pool", Pool.from_row)

    @pytest.fixture
    def controller_configs(self):
        return make_informer("ControllerConfig", ControllerConfigSnapshot.from_row)

    @pytest.fixture
    def engine(self):
        engine = MagicMock()
        engine.sync_runtime_config_request = AsyncMock()
        engine.sync_image_config = AsyncMock()
        return engine

    @pytest.fixture
    def finalizers(self):
        finalizers = MagicMock()
        finalizers.cascade_delete = AsyncMock()
        return finalizers

    @pytest.fixture
    def controller(self, engine, finalizers, requests, images, pools, controller_configs):
        return Controller(
            engine=engine,
            finalizers=finalizers,
            requests=requests,
            images=images,
            pools=pools,
            controller_configs=controller_configs,
            config=ControllerConfig(workers=2),
        )

    async def test_initial_list_enqueues_requests(self, controller, requests):
        """Test that listed requests are enqueued by name."""
        await requests.relist()

        assert await drain(controller.queue) == ["a", "b"]

    async def test_status_only_update_skipped(self, controller):
        """Test that updates written by the sync itself don't requeue."""
        old = RuntimeConfigRequest("a", generation=1, resource_version=1)
        new = RuntimeConfigRequest("a", generation=1, resource_version=2)

        await controller._update_request(
            WatchEvent(EventType.MODIFIED, "RuntimeConfigRequest", Live(new), old=old)
        )

        assert len(controller.queue) == 0

    async def test_generation_change_enqueued(self, controller):
        """Test that a spec change requeues the request."""
        old = RuntimeConfigRequest("a", generation=1, resource_version=1)
        new = RuntimeConfigRequest("a", generation=2, resource_version=2)

        await controller._update_request(
            WatchEvent(EventType.MODIFIED, "RuntimeConfigRequest", Live(new), old=old)
        )

        assert await drain(controller.queue) == ["a"]

    async def test_deletion_marker_enqueued(self, controller):
        """Test that marking a request for deletion requeues it."""
        old = RuntimeConfigRequest("a", resource_version=1)
        new = RuntimeConfigRequest("a", resource_version=2, deletion_timestamp="now")

        await controller._update_request(
            WatchEvent(EventType.MODIFIED, "RuntimeConfigRequest", Live(new), old=old)
        )

        assert await drain(controller.queue) == ["a"]

    async def test_resync_enqueued(self, controller, requests):
        """Test that a periodic resync requeues unchanged requests."""
        await requests.relist()
        await drain(controller.queue)

        await requests.relist(resync=True)

        assert await drain(controller.queue) == ["a", "b"]

    async def test_delete_runs_cascade_on_copy(self, controller, finalizers):
        """Test that deletion cleanup never edits the notified object."""
        request = RuntimeConfigRequest("a", finalizers=["99-worker-a"])

        await controller._delete_request(
            WatchEvent(EventType.DELETED, "RuntimeConfigRequest", Tombstone("a", request))
        )

        finalizers.cascade_delete.assert_called_once()
        passed = finalizers.cascade_delete.call_args[0][0]
        assert passed == request
        assert passed is not request

    async def test_delete_cleanup_error_logged(self, controller, finalizers):
        """Test that a failing cleanup doesn't escape the handler."""
        finalizers.cascade_delete.side_effect = RuntimeError("boom")

        await controller._delete_request(
            WatchEvent(EventType.DELETED, "RuntimeConfigRequest", Live(RuntimeConfigRequest("a")))
        )

    async def test_pool_change_enqueues_everything(self, controller, requests, pools):
        """Test that a pool event requeues all requests and the image key."""
        await requests.relist()
        await drain(controller.queue)
        pools.list_func.return_value = [Pool("infra", {"pool": "infra"})]

        await pools.relist()

        assert await drain(controller.queue) == ["a", "b"]
        assert await drain(controller.image_queue) == ["cluster"]

    async def test_image_change_enqueues_cluster(self, controller, images, controller_configs):
        """Test that image and controller config events use the singleton key."""
        images.list_func.return_value = [ImageConfigRequest()]
        controller_configs.list_func.return_value = [ControllerConfigSnapshot("c")]

        await images.relist()
        await controller_configs.relist()

        assert await drain(controller.image_queue) == ["cluster"]

    async def test_process_success_forgets(self, controller, engine):
        """Test that a successful sync clears the key's backoff."""
        controller.queue.add("a")
        controller.queue.rate_limiter.when("a")

        assert await controller._process_next_item(
            controller.queue, engine.sync_runtime_config_request
        )

        engine.sync_runtime_config_request.assert_called_once_with("a")
        assert controller.queue.num_requeues("a") == 0

    async def test_process_failure_requeues(self, controller, engine):
        """Test that a failed sync is retried with backoff."""
        engine.sync_runtime_config_request.side_effect = RuntimeError("boom")
        controller.queue.add("a")

        await controller._process_next_item(controller.queue, engine.sync_runtime_config_request)

        assert controller.queue.num_requeues("a") == 1

    async def test_process_returns_false_on_shutdown(self, controller, engine):
        """Test that workers stop once the queue is shut down."""
        await controller.queue.shut_down()

        assert not await controller._process_next_item(
            controller.queue, engine.sync_runtime_config_request
        )

    async def test_start_and_stop(self, controller, engine):
        """Test that workers sync queued keys and exit on stop."""
        task = asyncio.create_task(controller.start())
        controller.queue.add("a")
        controller.enqueue_image()

        for _ in range(50):
            if engine.sync_image_config.called and engine.sync_runtime_config_request.called:
                break
            await asyncio.sleep(0.01)

        await controller.stop()
        await asyncio.wait_for(task, timeout=1)

        engine.sync_runtime_config_request.assert_called_with("a")
        engine.sync_image_config.assert_called_with("cluster")

    async def test_stop_waits_for_in_flight_keys(self, controller, engine):
        """Test that stop returns only after the running sync finishes."""
        started = []
        finished = []

        async def slow_sync(key):
            started.append(key)
            await asyncio.sleep(0.2)
            finished.append(key)

        engine.sync_runtime_config_request = slow_sync
        task = asyncio.create_task(controller.start(workers=1))
        controller.queue.add("a")
        controller.queue.add("b")
        await asyncio.sleep(0.05)

        await controller.stop()

        assert finished == ["a"]
        assert started == ["a"]
        await asyncio.wait_for(task, timeout=1)

    async def test_retry_ceiling_parks_key(self, controller, engine):
        """Test that 15 backoff retries are followed by a cool-down."""
        engine.sync_runtime_config_request.side_effect = RuntimeError("boom")
        queue = controller.queue
        delays = []

        def add_after(key, delay):
            delays.append(delay)
            queue.add(key)

        queue.add("a")
        with patch.object(queue, "add_after", side_effect=add_after) as parked:
            for _ in range(17):
                assert await controller._process_next_item(
                    queue, engine.sync_runtime_config_request
                )

        assert delays[:15] == [0.005 * 2**n for n in range(15)]
        assert delays[15] == 60.0
        parked.assert_any_call("a", 60.0)
        # Backoff starts over after the cool-down
        assert delays[16] == 0.005
        assert queue.num_requeues("a") == 1
        assert engine.sync_runtime_config_request.await_count == 17


class TestHandleError:
    """Tests for the retry decision."""

    @pytest.fixture
    def controller(self):
        controller = Controller.__new__(Controller)
        controller.config = ControllerConfig(max_retries=15, requeue_cooldown=60.0)
        return controller

    def test_success_forgets(self, controller):
        queue = MagicMock()

        controller._handle_error(queue, None, "a")

        queue.forget.assert_called_once_with("a")
        queue.add_rate_limited.assert_not_called()

    def test_retries_below_limit(self, controller):
        queue = MagicMock()
        queue.num_requeues.return_value = 14

        controller._handle_error(queue, RuntimeError("boom"), "a")

        queue.add_rate_limited.assert_called_once_with("a")
        queue.forget.assert_not_called()

    def test_cooldown_after_limit(self, controller):
        """Test that a key past the retry budget is parked, not dropped."""
        queue = MagicMock()
        queue.num_requeues.return_value = 15

        controller._handle_error(queue, RuntimeError("boom"), "a")

        queue.forget.assert_called_once_with("a")
        queue.add_after.assert_called_once_with("a", 60.0)
        queue.add_rate_limited.assert_not_called()
