"""In-process pub/sub event bus."""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List

TOPIC_CONFIG_CHANGED = "agent/config/CHANGED"
TOPIC_INSTALLATION_START = "deployment/INSTALL"
TOPIC_INSTALLATION_COMPLETE = "deployment/COMPLETE"

Payload = Dict[str, Any]
Handler = Callable[[Payload], None]


class EventBus:
    """Topic based event bus; handler failures never reach the publisher."""

    def __init__(self):
        self.logger = logging.getLogger("fieldagent.event_bus")
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        """Subscribe a handler to a topic ("*" for all)."""
        with self._lock:
            self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, topic: str, payload: Payload) -> None:
        """Publish a payload to every subscriber of topic."""
        handlers: List[Handler] = []
        with self._lock:
            handlers.extend(self._subscribers.get(topic, []))
            handlers.extend(self._subscribers.get("*", []))
        self.logger.debug(f"Publishing {topic} to {len(handlers)} handler(s)")
        for handler in handlers:
            try:
                handler({"topic": topic, **payload})
            except Exception as e:
                self.logger.error(f"Event handler failed for topic '{topic}': {e}", exc_info=True)
