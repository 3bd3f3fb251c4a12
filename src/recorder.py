"""
Event Recorder - event records attached to reconciled objects.
"""

import logging

from store import StoreClient

logger = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


class EventRecorder:
    """Logs events and persists them through the store."""

    def __init__(self, store: StoreClient, component: str = "runtime-config-controller"):
        self.store = store
        self.component = component

    async def event(
        self, kind: str, name: str, event_type: str, reason: str, message: str
    ) -> None:
        log = logger.warning if event_type == WARNING else logger.info
        log(f"[{self.component}] {kind}/{name} {reason}: {message}")
        try:
            await self.store.record_event(kind, name, event_type, reason, message)
        except Exception as e:
            logger.error(f"Failed to record event for {kind}/{name}: {e}")
