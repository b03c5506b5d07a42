from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: Any


EventHandler = Callable[[InternalEvent], None]
Unsubscribe = Callable[[], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> Unsubscribe:
        self._subscribers[event_name].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event_name: str, payload: Any) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        # snapshot: handlers may unsubscribe while being notified
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, []))
