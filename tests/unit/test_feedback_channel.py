"""Unit tests for FeedbackChannel synchronization and FeedbackHandler."""

import asyncio
import threading
from urllib.parse import parse_qs

import httpx
import pytest

from fieldagent.exceptions import ProtocolError, RetryAfterError
from fieldagent.models.event import DEPLOYMENTADMIN_COMPLETE, LogRecord
from fieldagent.services.connection import ConnectionHandler
from fieldagent.services.feedback_channel import FeedbackChannel, FeedbackHandler
from fieldagent.services.feedback_store import FeedbackStoreManager


class FeedbackServer:
    """Fake feedback endpoint: per store id range strings, records uploads."""

    def __init__(self, ranges=None, query_status=None, send_status=200, retry_after=None):
        self.ranges = ranges or {}
        self.query_status = query_status or {}
        self.send_status = send_status
        self.retry_after = retry_after
        self.queries = []
        self.uploads = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.retry_after is not None:
            return httpx.Response(503, headers={"Retry-After": str(self.retry_after)})
        if request.url.path == "/auditlog/query":
            params = parse_qs(request.url.query.decode())
            store_id = int(params["logid"][0])
            self.queries.append((params["tid"][0], store_id))
            status = self.query_status.get(store_id, 200)
            if status != 200:
                return httpx.Response(status)
            body = f"{params['tid'][0]},{store_id}"
            if self.ranges.get(store_id):
                body += f",{self.ranges[store_id]}"
            return httpx.Response(200, text=body + "\n")
        if request.url.path == "/auditlog/send":
            if self.send_status != 200:
                return httpx.Response(self.send_status)
            self.uploads.append(
                [LogRecord.from_representation(line) for line in request.content.decode().splitlines()]
            )
            return httpx.Response(200)
        return httpx.Response(404)

    def sent_ids(self):
        return [(event.store_id, event.id) for upload in self.uploads for event in upload]


@pytest.fixture
def manager(work_dir):
    manager = FeedbackStoreManager(work_dir / "feedback", "auditlog", target_id="target-1")
    yield manager
    manager.close()


def fill(manager, count):
    for i in range(count):
        manager.write(DEPLOYMENTADMIN_COMPLETE, {"n": str(i)})


@pytest.mark.unit
class TestFeedbackChannel:
    """Test the range-diff upload."""

    @pytest.fixture
    def make_channel(self, manager, fake_server, make_connection):
        def _make(feedback_server):
            server = fake_server(feedback_server)
            return FeedbackChannel("auditlog", manager, make_connection(server))

        return _make

    @pytest.mark.asyncio
    async def test_send_waits_for_writer_without_blocking_loop(self, manager, make_channel):
        fill(manager, 3)
        feedback_server = FeedbackServer()
        channel = make_channel(feedback_server)
        locked = threading.Event()
        release = threading.Event()

        def writer():
            with manager._lock:
                locked.set()
                release.wait(timeout=5)
                manager.write(DEPLOYMENTADMIN_COMPLETE, {"n": "late"})

        thread = threading.Thread(target=writer)
        thread.start()
        assert locked.wait(timeout=5)

        send = asyncio.create_task(channel.send_feedback())
        await asyncio.sleep(0.05)
        assert not send.done()

        release.set()
        sent = await asyncio.wait_for(send, 5)
        thread.join(timeout=5)

        assert sent == 4
        assert [event_id for _, event_id in feedback_server.sent_ids()] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_sends_only_missing_ids(self, manager, make_channel):
        fill(manager, 50)
        store_id = manager.current_store_id
        server = FeedbackServer(ranges={store_id: "1-30,40-45"})

        sent = await make_channel(server).send_feedback()

        expected = list(range(31, 40)) + list(range(46, 51))
        assert sent == 14
        assert server.sent_ids() == [(store_id, i) for i in expected]
        assert server.queries == [("target-1", store_id)]
        assert all(event.target_id == "target-1" for event in server.uploads[0])

    @pytest.mark.asyncio
    async def test_nothing_sent_when_server_is_in_sync(self, manager, make_channel):
        fill(manager, 10)
        server = FeedbackServer(ranges={manager.current_store_id: "1-10"})

        sent = await make_channel(server).send_feedback()

        assert sent == 0
        assert server.uploads == []

    @pytest.mark.asyncio
    async def test_empty_remote_receives_everything_once(self, manager, make_channel):
        fill(manager, 5)
        store_id = manager.current_store_id
        server = FeedbackServer()
        channel = make_channel(server)

        await channel.send_feedback()
        server.ranges[store_id] = "1-5"
        second = await channel.send_feedback()

        assert server.sent_ids() == [(store_id, i) for i in range(1, 6)]
        assert second == 0

    @pytest.mark.asyncio
    async def test_all_stores_sent_in_one_upload(self, manager, make_channel):
        fill(manager, 3)
        first = manager.current_store_id
        second = manager.force_new_store()
        fill(manager, 2)
        server = FeedbackServer(ranges={first: "1-2"})

        sent = await make_channel(server).send_feedback()

        assert sent == 3
        assert len(server.uploads) == 1
        assert server.sent_ids() == [(first, 3), (second, 1), (second, 2)]

    @pytest.mark.asyncio
    async def test_failed_query_skips_only_that_store(self, manager, make_channel):
        fill(manager, 3)
        first = manager.current_store_id
        second = manager.force_new_store()
        fill(manager, 2)
        server = FeedbackServer(query_status={first: 500})

        sent = await make_channel(server).send_feedback()

        assert sent == 2
        assert server.sent_ids() == [(second, 1), (second, 2)]

    @pytest.mark.asyncio
    async def test_empty_query_response_skips_store(self, manager, make_channel):
        fill(manager, 3)

        def handler(request):
            if request.url.path.endswith("/query"):
                return httpx.Response(200, text="")
            return httpx.Response(200)

        channel = make_channel(handler)

        assert await channel.send_feedback() == 0

    @pytest.mark.asyncio
    async def test_failed_upload_raises(self, manager, make_channel):
        fill(manager, 3)
        server = FeedbackServer(send_status=500)

        with pytest.raises(ProtocolError):
            await make_channel(server).send_feedback()

    @pytest.mark.asyncio
    async def test_retry_after_propagates(self, manager, make_channel):
        fill(manager, 3)
        server = FeedbackServer(retry_after=45)

        with pytest.raises(RetryAfterError) as exc_info:
            await make_channel(server).send_feedback()

        assert exc_info.value.seconds == 45

    @pytest.mark.asyncio
    async def test_missing_server_url_backs_off(self, manager, config_handler, fake_server):
        config_handler.update(server_url=None)
        channel = FeedbackChannel(
            "auditlog", manager, ConnectionHandler(config_handler, fake_server(FeedbackServer()).transport)
        )

        with pytest.raises(RetryAfterError) as exc_info:
            await channel.send_feedback()

        assert exc_info.value.seconds == 10

    def test_write_goes_to_store(self, manager, make_channel):
        channel = make_channel(FeedbackServer())

        record = channel.write(DEPLOYMENTADMIN_COMPLETE, {"success": "true"})

        assert manager.get_highest_event_id(record.store_id) == 1


@pytest.mark.unit
class TestFeedbackHandler:
    """Test channel lifecycle driven by configuration."""

    @pytest.fixture
    def handler(self, config_handler, event_bus, fake_server, make_connection):
        handler = FeedbackHandler(
            config_handler, make_connection(fake_server(FeedbackServer())), event_bus
        )
        yield handler
        handler.close()

    def test_configured_channels_open_lazily(self, handler, work_dir):
        channel = handler.get_channel("auditlog")

        assert channel is handler.get_channel("auditlog")
        assert channel.manager.base_dir == work_dir / "feedback"
        assert channel.manager.target_id == "target-1"
        assert handler.get_channel("unknown") is None

    def test_removed_channel_is_closed(self, handler, config_handler):
        channel = handler.get_channel("auditlog")

        config_handler.update(feedback_channels=["metrics"])

        assert handler.get_channel("auditlog") is None
        assert channel.write(DEPLOYMENTADMIN_COMPLETE) is None
        assert handler.get_channel("metrics") is not None

    def test_identification_change_updates_target(self, handler, config_handler):
        channel = handler.get_channel("auditlog")

        config_handler.update(identification="target-2")

        assert channel.manager.target_id == "target-2"
        assert channel.write(DEPLOYMENTADMIN_COMPLETE).target_id == "target-2"
