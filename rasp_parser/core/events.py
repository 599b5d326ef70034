# rasp_parser/core/events.py
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Literal, Union

from .errors import format_error
from .parsers import Family
from ..models.models import Day

log = logging.getLogger(__name__)


class EventKind(str, Enum):
    ADD_GROUP_DAY = "addGroupDay"
    UPDATE_GROUP_DAY = "updateGroupDay"
    ADD_TEACHER_DAY = "addTeacherDay"
    UPDATE_TEACHER_DAY = "updateTeacherDay"
    UPDATE_WEEK = "updateWeek"
    ERROR = "error"
    FLUSH_CACHE = "flushCache"


# Per-day notification kinds per family, indexed by classify_day_event() output
DAY_EVENT_KINDS: Dict[Family, Dict[str, EventKind]] = {
    Family.GROUPS: {"add": EventKind.ADD_GROUP_DAY, "update": EventKind.UPDATE_GROUP_DAY},
    Family.TEACHERS: {"add": EventKind.ADD_TEACHER_DAY, "update": EventKind.UPDATE_TEACHER_DAY},
}

# Audience of the weekly "new week" notification
CHAT_MODES: Dict[Family, str] = {
    Family.GROUPS: "student",
    Family.TEACHERS: "teacher",
}

ARCHIVE_TYPES: Dict[Family, str] = {
    Family.GROUPS: "group",
    Family.TEACHERS: "teacher",
}


@dataclass(frozen=True)
class DayEvent:
    kind: EventKind
    key: str
    day: Day


@dataclass(frozen=True)
class WeekEvent:
    chat_mode: str
    week_index: int
    kind: EventKind = field(default=EventKind.UPDATE_WEEK, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException
    kind: EventKind = field(default=EventKind.ERROR, init=False)

    @property
    def context(self) -> Dict[str, Any]:
        return getattr(self.error, "context", {})

    @property
    def text(self) -> str:
        return format_error(self.error)


@dataclass(frozen=True)
class ArchivedDay:
    type: Literal["group", "teacher"]
    key: str
    day: Day


@dataclass(frozen=True)
class FlushCacheEvent:
    days: List[ArchivedDay]
    kind: EventKind = field(default=EventKind.FLUSH_CACHE, init=False)


Event = Union[DayEvent, WeekEvent, ErrorEvent, FlushCacheEvent]
Handler = Callable[[Event], Any]


def _dedup_key(event: Event) -> Hashable:
    if isinstance(event, DayEvent):
        return event.kind, event.key, event.day.date
    if isinstance(event, WeekEvent):
        return event.kind, event.chat_mode
    if isinstance(event, ErrorEvent):
        return event.kind, str(event.error)
    return event.kind, id(event)


class EventBus:
    """
    Collects the events of one parse cycle and hands them to subscribers.

    The orchestrator emits into the pending batch; `dispatch()` drains the
    batch and calls the handlers subscribed to each event kind. Within a batch
    a day event is kept once per (kind, key, date).
    """

    def __init__(self):
        self._pending: List[Event] = []
        self._seen = set()
        self._handlers: Dict[EventKind, List[Handler]] = defaultdict(list)

    def subscribe(self, kind: EventKind, handler: Handler) -> None:
        self._handlers[kind].append(handler)

    def emit(self, event: Event) -> bool:
        """Adds an event to the pending batch. Returns False for a duplicate."""
        key = _dedup_key(event)
        if key in self._seen:
            log.debug(f"Duplicate event dropped: {key}")
            return False
        self._seen.add(key)
        self._pending.append(event)
        return True

    @property
    def pending(self) -> List[Event]:
        return list(self._pending)

    def drain(self) -> List[Event]:
        """Returns the pending batch and starts a new one."""
        batch = self._pending
        self._pending = []
        self._seen = set()
        return batch

    async def dispatch(self) -> List[Event]:
        """
        Delivers the pending batch to subscribers.

        A failing handler is logged and does not stop delivery to the others.

        Returns:
            The delivered batch.
        """
        batch = self.drain()
        for event in batch:
            for handler in self._handlers.get(event.kind, []):
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    log.error(f"Handler for '{event.kind.value}' failed: {e}", exc_info=True)
        return batch
