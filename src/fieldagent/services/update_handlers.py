"""Update targets: the agent itself and its deployment packages."""

import logging
from pathlib import Path
from typing import List

import httpx

from fieldagent.exceptions import ProtocolError
from fieldagent.models.update import UPDATE_TYPE_AGENT, UPDATE_TYPE_DEPLOYMENT, UpdateInfo
from fieldagent.models.version import Version, highest_version
from fieldagent.services.connection import ConnectionHandler, check_response
from fieldagent.services.content_range import HEADER_PACKAGE_SIZE, ContentRangeStream
from fieldagent.services.download import DownloadHandle, DownloadHandler
from fieldagent.services.package_store import PackageSource, PackageStore


class UpdateHandlerBase:
    """Server access and installation for one update target.

    Subclasses only define the endpoint layout.
    """

    update_type = ""
    supports_fix_packages = False

    def __init__(
        self,
        connection: ConnectionHandler,
        download_handler: DownloadHandler,
        package_store: PackageStore,
    ):
        """Initialize update handler.

        Args:
            connection: Connection handler (server URL, clients, config)
            download_handler: Source of resumable download handles
            package_store: Install operation and installed-version record
        """
        self.logger = logging.getLogger(f"fieldagent.update.{self.update_type}")
        self.connection = connection
        self.download_handler = download_handler
        self.package_store = package_store

    @property
    def identification(self) -> str:
        return self.connection.config_handler.get().identification

    def versions_url(self) -> str:
        raise NotImplementedError

    def package_url(self, version: Version, fix_package: bool = False) -> str:
        raise NotImplementedError

    def get_installed_version(self) -> Version:
        return self.package_store.get_installed_version()

    async def get_available_versions(self) -> List[Version]:
        """Fetch the versions the server offers, ascending.

        Raises:
            RetryAfterError: Server asked to back off
            ProtocolError: Unexpected status or malformed version line
            httpx.HTTPError: Connection failure
        """
        url = self.versions_url()
        async with self.connection.create_client() as client:
            response = await client.get(url)
            check_response(response)

        versions = set()
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                versions.add(Version.parse(line))
            except ValueError as e:
                raise ProtocolError(f"Malformed version {line!r} from {url}") from e
        return sorted(versions)

    async def get_highest_available_version(self) -> Version:
        return highest_version(await self.get_available_versions())

    async def get_size(self, version: Version, fix_package: bool = False) -> int:
        """Artifact size from a HEAD request, -1 when the server does not say."""
        url = self.package_url(version, fix_package)
        async with self.connection.create_client() as client:
            response = await client.head(url)
            check_response(response)
        try:
            return int(response.headers.get(HEADER_PACKAGE_SIZE, -1))
        except ValueError:
            return -1

    def open_stream(
        self, client: httpx.AsyncClient, version: Version, fix_package: bool = False
    ) -> ContentRangeStream:
        """Content stream of the artifact; caller closes it."""
        return ContentRangeStream(client, self.package_url(version, fix_package))

    def get_download_handle(self, version: Version, fix_package: bool = False) -> DownloadHandle:
        return self.download_handler.get_handle(self.package_url(version, fix_package))

    async def install(self, update_info: UpdateInfo, source: PackageSource) -> Path:
        """Install an artifact.

        Raises:
            InstallationFailedError: If the install operation fails
        """
        return await self.package_store.install(update_info, source)


class AgentUpdateHandler(UpdateHandlerBase):
    """Self-update target: ``agent/{id}/{symbolicName}/versions/``."""

    update_type = UPDATE_TYPE_AGENT

    def _endpoint(self) -> str:
        config = self.connection.config_handler.get()
        return (
            f"{self.connection.server_url()}/agent/{config.identification}"
            f"/{config.agent_symbolic_name}/versions/"
        )

    def versions_url(self) -> str:
        return self._endpoint()

    def package_url(self, version: Version, fix_package: bool = False) -> str:
        # Agent artifacts are always complete packages
        return f"{self._endpoint()}{version}"


class DeploymentHandler(UpdateHandlerBase):
    """Deployment package target: ``deployment/{id}/versions/``."""

    update_type = UPDATE_TYPE_DEPLOYMENT
    supports_fix_packages = True

    def versions_url(self) -> str:
        return f"{self.connection.server_url()}/deployment/{self.identification}/versions/"

    def package_url(self, version: Version, fix_package: bool = False) -> str:
        url = f"{self.versions_url()}{version}"
        if fix_package:
            url = f"{url}?current={self.get_installed_version()}"
        return url
