"""Records installation events in the audit log feedback channel."""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from fieldagent.models.event import (
    DEPLOYMENTADMIN_COMPLETE,
    DEPLOYMENTCONTROL_INSTALL,
    KEY_MSG,
    KEY_NAME,
    KEY_RETRY_AFTER,
    KEY_SUCCESS,
    KEY_TYPE,
    KEY_VERSION,
)
from fieldagent.services.event_bus import (
    TOPIC_INSTALLATION_COMPLETE,
    TOPIC_INSTALLATION_START,
    EventBus,
)
from fieldagent.services.feedback_channel import FeedbackChannel, FeedbackHandler

AUDITLOG_CHANNEL = "auditlog"


def _on_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class EventLogger:
    """Translates installation bus events into audit records.

    Events published from the event loop are written by a single worker
    thread, in publish order, so a busy store never stalls the loop.
    """

    def __init__(self, feedback_handler: FeedbackHandler, channel_name: str = AUDITLOG_CHANNEL):
        self.logger = logging.getLogger("fieldagent.event_logger")
        self.feedback_handler = feedback_handler
        self.channel_name = channel_name
        self._event_bus = None
        self._executor: Optional[ThreadPoolExecutor] = None

    def start(self, event_bus: EventBus) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="fieldagent-auditlog")
        event_bus.subscribe(TOPIC_INSTALLATION_START, self.handle_event)
        event_bus.subscribe(TOPIC_INSTALLATION_COMPLETE, self.handle_event)
        self._event_bus = event_bus

    def stop(self) -> None:
        if self._event_bus is not None:
            self._event_bus.unsubscribe(TOPIC_INSTALLATION_START, self.handle_event)
            self._event_bus.unsubscribe(TOPIC_INSTALLATION_COMPLETE, self.handle_event)
            self._event_bus = None
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    async def flush(self) -> None:
        """Wait until every queued audit record is written."""
        if self._executor is not None:
            await asyncio.wrap_future(self._executor.submit(lambda: None))

    def handle_event(self, event: Dict[str, Any]) -> None:
        topic = event.get("topic")
        properties = {
            KEY_NAME: str(event.get("name", "")),
            KEY_VERSION: str(event.get("version", "")),
        }
        if topic == TOPIC_INSTALLATION_START:
            event_type = DEPLOYMENTCONTROL_INSTALL
        elif topic == TOPIC_INSTALLATION_COMPLETE:
            event_type = DEPLOYMENTADMIN_COMPLETE
            properties[KEY_SUCCESS] = "true" if event.get("success") else "false"
            if event.get("msg"):
                properties[KEY_MSG] = str(event["msg"])
            cause = event.get("cause")
            if cause is not None:
                properties[KEY_TYPE] = type(cause).__name__
            if event.get("retry_after") is not None:
                properties[KEY_RETRY_AFTER] = str(event["retry_after"])
        else:
            return

        channel = self.feedback_handler.get_channel(self.channel_name)
        if channel is None:
            self.logger.debug(f"Feedback channel {self.channel_name} not configured, dropping {topic}")
            return
        if self._executor is not None and _on_event_loop():
            self._executor.submit(self._write, channel, event_type, properties)
        else:
            self._write(channel, event_type, properties)

    def _write(self, channel: FeedbackChannel, event_type: int, properties: Dict[str, str]) -> None:
        try:
            channel.write(event_type, properties)
        except OSError as e:
            self.logger.error(f"Failed to write audit event {event_type}: {e}")
