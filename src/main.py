"""
Main entry point for the Runtime Config Controller.

Wires the store, informers, sync engine and controller together and runs
them until SIGINT or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Dict, List, Optional

from config import get_config
from controller import Controller
from finalizers import FinalizerManager
from informer import Informer, WatchListener
from models import ControllerConfigSnapshot, ImageConfigRequest, Pool, RuntimeConfigRequest
from recorder import EventRecorder
from store import StoreClient
from sync import SyncEngine
from templates import FileTemplateRenderer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the informers and the controller."""

    def __init__(self):
        self.config = get_config()
        self.store: Optional[StoreClient] = None
        self.informers: Dict[str, Informer] = {}
        self.listener: Optional[WatchListener] = None
        self.controller: Optional[Controller] = None
        self.running = False
        self._stopped = False
        self._shutdown_event = asyncio.Event()
        self._resync_tasks: List[asyncio.Task] = []

    async def initialize(self):
        """Initialize all components."""
        logging.getLogger().setLevel(self.config.log_level.upper())
        logger.info("Initializing Runtime Config Controller")

        db_config = self.config.database
        self.store = StoreClient(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.store.connect()
        await self.store.initialize_schema()
        logger.info("Database initialized")

        ctrl_config = self.config.controller
        resync = ctrl_config.resync_interval
        self.informers = {
            "runtime_config_requests": Informer(
                "RuntimeConfigRequest",
                self.store.list_runtime_config_requests,
                RuntimeConfigRequest.from_row,
                resync,
            ),
            "image_config_requests": Informer(
                "ImageConfigRequest",
                self.store.list_image_config_requests,
                ImageConfigRequest.from_row,
                resync,
            ),
            "pools": Informer("Pool", self.store.list_pools, Pool.from_row, resync),
            "controller_configs": Informer(
                "ControllerConfig",
                self.store.list_controller_configs,
                ControllerConfigSnapshot.from_row,
                resync,
            ),
        }
        self.listener = WatchListener(self.store.pool, self.informers)

        finalizers = FinalizerManager(
            self.store,
            retry_steps=ctrl_config.conflict_retry_steps,
            retry_delay=ctrl_config.conflict_retry_delay,
            retry_jitter=ctrl_config.conflict_retry_jitter,
        )
        engine = SyncEngine(
            store=self.store,
            requests=self.informers["runtime_config_requests"],
            images=self.informers["image_config_requests"],
            pools=self.informers["pools"],
            controller_configs=self.informers["controller_configs"],
            renderer=FileTemplateRenderer(self.config.render.templates_dir),
            controller_version=self.config.render.controller_version,
            finalizers=finalizers,
            recorder=EventRecorder(self.store),
            retry_steps=ctrl_config.conflict_retry_steps,
            retry_delay=ctrl_config.conflict_retry_delay,
            retry_jitter=ctrl_config.conflict_retry_jitter,
        )
        self.controller = Controller(
            engine=engine,
            finalizers=finalizers,
            requests=self.informers["runtime_config_requests"],
            images=self.informers["image_config_requests"],
            pools=self.informers["pools"],
            controller_configs=self.informers["controller_configs"],
            config=ctrl_config,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        self._shutdown_event.clear()
        logger.info("Starting Runtime Config Controller")

        # Listen before the initial list so no change falls in between
        await self.listener.start()
        for informer in self.informers.values():
            await informer.relist()
            logger.info(f"Synced {len(informer.list())} {informer.kind} object(s)")

        self._resync_tasks = [
            asyncio.create_task(informer.run(self._shutdown_event))
            for informer in self.informers.values()
        ]

        try:
            await self.controller.start()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping Runtime Config Controller")
        self.running = False
        self._shutdown_event.set()

        if self.controller:
            await self.controller.stop()

        if self._resync_tasks:
            await asyncio.gather(*self._resync_tasks, return_exceptions=True)
            self._resync_tasks = []

        if self.listener:
            await self.listener.stop()

        if self.store:
            await self.store.close()

        logger.info("Runtime Config Controller stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
