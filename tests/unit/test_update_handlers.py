"""Unit tests for AgentUpdateHandler and DeploymentHandler."""

import httpx
import pytest

from fieldagent.exceptions import ProtocolError, RetryAfterError
from fieldagent.models.version import EMPTY_VERSION, Version
from fieldagent.services.download import DownloadHandler
from fieldagent.services.package_store import PackageStore
from fieldagent.services.update_handlers import AgentUpdateHandler, DeploymentHandler


def versions_server(body: str, status: int = 200, package_size: str = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            headers = {"X-Package-Size": package_size} if package_size else {}
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, text=body)

    return handler


@pytest.mark.unit
class TestUpdateHandlers:
    """Test endpoint layout and version listing."""

    @pytest.fixture
    def make_handler(self, work_dir, fake_server, make_connection):
        def _make(cls, handler_fn):
            server = fake_server(handler_fn)
            connection = make_connection(server)
            store = PackageStore(work_dir / cls.update_type)
            return cls(connection, DownloadHandler(connection, work_dir), store), server

        return _make

    @pytest.mark.asyncio
    async def test_agent_versions(self, make_handler):
        handler, server = make_handler(AgentUpdateHandler, versions_server("1.0.0\n1.2.0\n\n1.1.0\n1.2.0\n"))

        versions = await handler.get_available_versions()

        assert versions == [Version(1), Version(1, 1), Version(1, 2)]
        assert str(server.requests[0].url) == "http://mgmt.test/agent/target-1/fieldagent/versions/"
        assert await handler.get_highest_available_version() == Version(1, 2)

    @pytest.mark.asyncio
    async def test_no_versions(self, make_handler):
        handler, _ = make_handler(DeploymentHandler, versions_server(""))

        assert await handler.get_highest_available_version() == EMPTY_VERSION

    @pytest.mark.asyncio
    async def test_malformed_version_line(self, make_handler):
        handler, _ = make_handler(DeploymentHandler, versions_server("1.0.0\nnot-a-version\n"))

        with pytest.raises(ProtocolError):
            await handler.get_available_versions()

    @pytest.mark.asyncio
    async def test_server_backoff(self, make_handler):
        def busy(request):
            return httpx.Response(503, headers={"Retry-After": "45"})

        handler, _ = make_handler(DeploymentHandler, busy)

        with pytest.raises(RetryAfterError) as exc_info:
            await handler.get_available_versions()

        assert exc_info.value.seconds == 45

    def test_deployment_package_urls(self, make_handler):
        handler, _ = make_handler(DeploymentHandler, versions_server(""))

        assert handler.package_url(Version(2)) == "http://mgmt.test/deployment/target-1/versions/2.0.0"
        assert (
            handler.package_url(Version(2), fix_package=True)
            == "http://mgmt.test/deployment/target-1/versions/2.0.0?current=0.0.0"
        )

    def test_agent_ignores_fix_package(self, make_handler):
        handler, _ = make_handler(AgentUpdateHandler, versions_server(""))

        assert not handler.supports_fix_packages
        assert handler.package_url(Version(2), fix_package=True).endswith("/versions/2.0.0")

    @pytest.mark.asyncio
    async def test_get_size(self, make_handler):
        handler, server = make_handler(DeploymentHandler, versions_server("", package_size="10000"))

        assert await handler.get_size(Version(2)) == 10000
        assert server.requests[0].method == "HEAD"

    @pytest.mark.asyncio
    async def test_get_size_unknown(self, make_handler):
        handler, _ = make_handler(DeploymentHandler, versions_server(""))

        assert await handler.get_size(Version(2)) == -1

    def test_download_handles_are_per_url(self, make_handler):
        handler, _ = make_handler(DeploymentHandler, versions_server(""))

        full = handler.get_download_handle(Version(2))

        assert full is handler.get_download_handle(Version(2))
        assert full is not handler.get_download_handle(Version(2), fix_package=True)
