"""
Watch Events - notifications delivered by the informers.

A delete notification carries either the live object as last seen or, when
the deletion was only noticed on relist, a tombstone wrapping the last state
the cache held. Handlers must unwrap both.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class Live(Generic[T]):
    """An object as reported by the feed."""

    obj: T


@dataclass(frozen=True)
class Tombstone(Generic[T]):
    """Last known state of an object whose deletion was missed."""

    key: str
    obj: T


@dataclass
class WatchEvent:
    """A change to one object of one kind."""

    event_type: EventType
    kind: str
    item: Union[Live, Tombstone]
    old: Optional[Any] = None

    @property
    def obj(self) -> Any:
        """The object, unwrapped from a live or tombstone item."""
        if isinstance(self.item, Tombstone):
            return self.item.obj
        if isinstance(self.item, Live):
            return self.item.obj
        raise TypeError(f"unexpected watch item {self.item!r}")


Handler = Callable[[WatchEvent], Awaitable[None]]


@dataclass
class EventHandlers:
    """Callbacks registered with an informer. Any of them may be None."""

    on_add: Optional[Handler] = None
    on_update: Optional[Handler] = None
    on_delete: Optional[Handler] = None

    async def dispatch(self, event: WatchEvent) -> None:
        handler = {
            EventType.ADDED: self.on_add,
            EventType.MODIFIED: self.on_update,
            EventType.DELETED: self.on_delete,
        }[event.event_type]
        if handler is not None:
            await handler(event)
