"""Feedback channels and the range-diff log synchronization."""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

import httpx

from fieldagent.exceptions import ProtocolError, RetryAfterError
from fieldagent.models.event import LogDescriptor, LogRecord
from fieldagent.models.range_set import SortedRangeSet
from fieldagent.services.config_handler import ConfigurationHandler
from fieldagent.services.connection import ConnectionHandler, check_response
from fieldagent.services.event_bus import TOPIC_CONFIG_CHANGED, EventBus
from fieldagent.services.feedback_store import FeedbackStoreManager

FEEDBACK_DIR = "feedback"
COMMAND_QUERY = "query"
COMMAND_SEND = "send"
PARAMETER_TARGET_ID = "tid"
PARAMETER_LOG_ID = "logid"


class FeedbackChannel:
    """A named event log that is shipped to the server incrementally.

    For every local store the server is asked which ids it already has;
    only the ids it lacks are sent, in ascending order, in one chunked
    upload per sync.
    """

    def __init__(self, name: str, manager: FeedbackStoreManager, connection: ConnectionHandler):
        """Initialize feedback channel.

        Args:
            name: Channel name (also the server path segment)
            manager: Store manager owning this channel's files
            connection: Connection handler for query/send requests
        """
        self.logger = logging.getLogger(f"fieldagent.feedback.{name}")
        self.name = name
        self.manager = manager
        self.connection = connection

    def write(self, event_type: int, properties: Optional[Dict[str, str]] = None) -> Optional[LogRecord]:
        """Append an event to the channel.

        Raises:
            OSError: If the store could not be written
        """
        return self.manager.write(event_type, properties)

    async def send_feedback(self) -> int:
        """Send every event the server is missing.

        A failing query (or unreadable local store) only skips that store id;
        a failing upload aborts the whole send.

        Returns:
            Number of events sent

        Raises:
            RetryAfterError: Server asked to back off
            ProtocolError: Upload rejected by the server
            httpx.HTTPError: Upload connection failure
        """
        identification = self.connection.config_handler.get().identification
        base_url = f"{self.connection.server_url()}/{self.name}"

        lines: List[str] = []
        async with self.connection.create_client() as client:
            # Store access takes the manager lock, which writer threads may hold
            for store_id in await asyncio.to_thread(self.manager.get_all_store_ids):
                try:
                    remote = await self._query(client, base_url, identification, store_id)
                    events = await asyncio.to_thread(self._missing_events, store_id, remote.ranges)
                except RetryAfterError:
                    raise
                except (httpx.HTTPError, OSError) as e:
                    self.logger.warning(f"Skipping store #{store_id} of channel {self.name}: {e}")
                    continue
                lines.extend(
                    event.with_target(identification).to_representation() + "\n" for event in events
                )

            if not lines:
                self.logger.debug(f"Channel {self.name} is in sync")
                return 0

            response = await client.post(f"{base_url}/{COMMAND_SEND}", content=self._body(lines))
            check_response(response)

        self.logger.info(f"Sent {len(lines)} event(s) on channel {self.name}")
        return len(lines)

    async def _query(
        self, client: httpx.AsyncClient, base_url: str, identification: str, store_id: int
    ) -> LogDescriptor:
        response = await client.get(
            f"{base_url}/{COMMAND_QUERY}",
            params={PARAMETER_TARGET_ID: identification, PARAMETER_LOG_ID: str(store_id)},
        )
        check_response(response)
        line = response.text.splitlines()[0] if response.text.strip() else ""
        try:
            return LogDescriptor.from_representation(line)
        except ValueError as e:
            raise ProtocolError(
                f"Malformed log descriptor for store #{store_id}: {line!r}"
            ) from e

    def _missing_events(self, store_id: int, remote: SortedRangeSet) -> List[LogRecord]:
        """Local events of store_id whose ids the remote range lacks, ascending."""
        highest_local = self.manager.get_highest_event_id(store_id)
        if highest_local < 1:
            return []
        missing = remote.diff_dest(SortedRangeSet.from_bounds(1, highest_local))
        if not missing:
            return []

        events = self.manager.get_events(store_id, missing.low, min(highest_local, missing.high))
        result = []
        wanted = iter(missing)
        next_id = next(wanted, None)
        for event in events:
            while next_id is not None and next_id < event.id:
                next_id = next(wanted, None)
            if next_id is None:
                break
            if event.id == next_id:
                result.append(event)
        self.logger.debug(
            f"Store #{store_id}: local 1-{highest_local}, remote {remote.to_representation() or '-'}, "
            f"sending {len(result)} event(s)"
        )
        return result

    @staticmethod
    async def _body(lines: List[str]) -> AsyncIterator[bytes]:
        for line in lines:
            yield line.encode("utf-8")


class FeedbackHandler:
    """Opens one feedback channel per configured channel name."""

    def __init__(
        self,
        config_handler: ConfigurationHandler,
        connection: ConnectionHandler,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize feedback handler.

        Args:
            config_handler: Source of channel names, identification and sizes
            connection: Connection handler passed to every channel
            event_bus: Bus to watch for channel configuration changes
        """
        self.logger = logging.getLogger("fieldagent.feedback")
        self.config_handler = config_handler
        self.connection = connection
        self._channels: Dict[str, FeedbackChannel] = {}
        if event_bus is not None:
            event_bus.subscribe(TOPIC_CONFIG_CHANGED, self._on_config_changed)

    @property
    def feedback_dir(self) -> Path:
        return Path(self.config_handler.get().work_dir) / FEEDBACK_DIR

    def get_channel_names(self) -> List[str]:
        return list(self.config_handler.get().feedback_channels)

    def get_channel(self, name: str) -> Optional[FeedbackChannel]:
        """Channel by name, opened on first use; None if not configured."""
        if name not in self.get_channel_names():
            return None
        channel = self._channels.get(name)
        if channel is None:
            config = self.config_handler.get()
            manager = FeedbackStoreManager(
                self.feedback_dir,
                name,
                target_id=config.identification,
                max_store_size=config.feedback_max_store_size,
            )
            channel = FeedbackChannel(name, manager, self.connection)
            self._channels[name] = channel
            self.logger.info(f"Opened feedback channel {name}")
        return channel

    def close(self) -> None:
        for name in list(self._channels):
            self._close_channel(name)

    def _close_channel(self, name: str) -> None:
        channel = self._channels.pop(name, None)
        if channel is not None:
            channel.manager.close()
            self.logger.info(f"Closed feedback channel {name}")

    def _on_config_changed(self, event: Dict) -> None:
        changed = event.get("changed", [])
        if "identification" in changed:
            identification = self.config_handler.get().identification
            for channel in self._channels.values():
                channel.manager.target_id = identification
        if "feedback_channels" in changed:
            configured = set(self.get_channel_names())
            for name in [name for name in self._channels if name not in configured]:
                self._close_channel(name)
