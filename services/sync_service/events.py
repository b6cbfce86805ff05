"""In-process event emitter for sync progress notifications."""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]

SYNC_PROGRESS = "sync-progress"
SYNC_ERROR = "sync-error"
SYNC_PROGRESS_UPDATE = "syncProgressUpdate"
SYNC_ITEM_PROGRESS = "syncItemProgress"


class EventEmitter:
    """Fire-and-forget pub/sub for named events."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        """Register a listener for an event."""
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver a payload to every listener; listener failures are logged."""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Listener failed for event '{event}': {e}")
