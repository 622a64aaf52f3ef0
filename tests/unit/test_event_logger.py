"""Unit tests for EventBus and EventLogger."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from fieldagent.exceptions import InstallationFailedError, RetryAfterError
from fieldagent.models.event import DEPLOYMENTADMIN_COMPLETE, DEPLOYMENTCONTROL_INSTALL
from fieldagent.services.connection import ConnectionHandler
from fieldagent.services.event_bus import (
    TOPIC_INSTALLATION_COMPLETE,
    TOPIC_INSTALLATION_START,
    EventBus,
)
from fieldagent.services.event_logger import EventLogger
from fieldagent.services.feedback_channel import FeedbackHandler


@pytest.mark.unit
class TestEventBus:
    """Test topic dispatch."""

    def test_publish_to_topic_and_wildcard(self):
        bus = EventBus()
        topic_events, all_events = [], []
        bus.subscribe("a/TOPIC", topic_events.append)
        bus.subscribe("*", all_events.append)

        bus.publish("a/TOPIC", {"x": 1})
        bus.publish("b/TOPIC", {"y": 2})

        assert topic_events == [{"topic": "a/TOPIC", "x": 1}]
        assert [e["topic"] for e in all_events] == ["a/TOPIC", "b/TOPIC"]

    def test_failing_handler_does_not_reach_publisher(self):
        bus = EventBus()
        received = []
        bus.subscribe("t", MagicMock(side_effect=RuntimeError("handler bug")))
        bus.subscribe("t", received.append)

        bus.publish("t", {})

        assert len(received) == 1

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        bus.subscribe("t", received.append)
        bus.unsubscribe("t", received.append)

        bus.publish("t", {})

        assert received == []


@pytest.mark.unit
class TestEventLogger:
    """Test translation of installation events into audit records."""

    @pytest.fixture
    def channel(self):
        return MagicMock()

    @pytest.fixture
    def logger(self, channel, event_bus):
        feedback_handler = MagicMock()
        feedback_handler.get_channel = MagicMock(return_value=channel)
        event_logger = EventLogger(feedback_handler)
        event_logger.start(event_bus)
        yield event_logger
        event_logger.stop()

    def test_install_start(self, logger, channel, event_bus):
        event_bus.publish(
            TOPIC_INSTALLATION_START, {"type": "deployment", "name": "target-1", "version": "2.0.0"}
        )

        channel.write.assert_called_once_with(
            DEPLOYMENTCONTROL_INSTALL, {"name": "target-1", "version": "2.0.0"}
        )

    def test_install_failure(self, logger, channel, event_bus):
        cause = InstallationFailedError("broken", cause=OSError("io"))
        event_bus.publish(
            TOPIC_INSTALLATION_COMPLETE,
            {
                "name": "target-1",
                "version": "2.0.0",
                "success": False,
                "cause": cause,
                "msg": cause.reason,
            },
        )

        event_type, properties = channel.write.call_args.args
        assert event_type == DEPLOYMENTADMIN_COMPLETE
        assert properties == {
            "name": "target-1",
            "version": "2.0.0",
            "success": "false",
            "msg": "OSError: io",
            "type": "InstallationFailedError",
        }

    def test_write_error_is_logged(self, logger, channel, event_bus):
        channel.write.side_effect = OSError("disk full")

        event_bus.publish(
            TOPIC_INSTALLATION_COMPLETE, {"name": "t", "version": "1.0.0", "success": True}
        )

        channel.write.assert_called_once()

    def test_unconfigured_channel_drops_event(self, logger, event_bus):
        logger.feedback_handler.get_channel.return_value = None

        event_bus.publish(TOPIC_INSTALLATION_START, {"name": "t", "version": "1.0.0"})

    def test_stop_unsubscribes(self, logger, channel, event_bus):
        logger.stop()

        event_bus.publish(TOPIC_INSTALLATION_START, {"name": "t", "version": "1.0.0"})

        channel.write.assert_not_called()

    def test_retry_after_is_marked(self, logger, channel, event_bus):
        busy = RetryAfterError(45)
        event_bus.publish(
            TOPIC_INSTALLATION_COMPLETE,
            {"name": "t", "version": "2.0.0", "success": False, "msg": str(busy), "retry_after": 45},
        )

        _, properties = channel.write.call_args.args
        assert properties["retryafter"] == "45"
        assert properties["msg"] == "Server busy, retry after 45 seconds"
        assert "type" not in properties


@pytest.mark.unit
class TestEventLoggerOnEventLoop:
    """Audit writes published from the event loop run on a worker thread."""

    @pytest.mark.asyncio
    async def test_busy_store_does_not_block_publisher(self, config_handler, event_bus):
        feedback_handler = FeedbackHandler(config_handler, ConnectionHandler(config_handler))
        manager = feedback_handler.get_channel("auditlog").manager
        event_logger = EventLogger(feedback_handler)
        event_logger.start(event_bus)
        locked = threading.Event()
        release = threading.Event()

        def writer():
            with manager._lock:
                locked.set()
                release.wait(timeout=5)

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            assert locked.wait(timeout=5)
            started = time.monotonic()
            event_bus.publish(TOPIC_INSTALLATION_START, {"name": "t", "version": "2.0.0"})
            event_bus.publish(
                TOPIC_INSTALLATION_COMPLETE, {"name": "t", "version": "2.0.0", "success": True}
            )
            assert time.monotonic() - started < 1
        finally:
            release.set()
            thread.join(timeout=5)

        await event_logger.flush()
        events = manager.get_events(manager.current_store_id, 1, 10)
        assert [e.type for e in events] == [DEPLOYMENTCONTROL_INSTALL, DEPLOYMENTADMIN_COMPLETE]

        event_logger.stop()
        feedback_handler.close()
