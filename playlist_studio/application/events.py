import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

PLAYLIST_UPDATE = "playlist:update"
PLAYLIST_RELOAD = "playlist:reload"

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """Synchronous publish/subscribe channel between views sharing the track cache.

    Events:
        playlist:update  {"playlist_id", "cause"}  a confirmed local edit
        playlist:reload  {"playlist_id"}           remote state changed elsewhere
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        # Copy so handlers may unsubscribe while being notified
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Handler for '{event}' failed")

    def clear(self) -> None:
        self._handlers.clear()

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
