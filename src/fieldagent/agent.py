"""Component wiring for one running field agent."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from fieldagent.models.update import UPDATE_TYPE_AGENT, UPDATE_TYPE_DEPLOYMENT
from fieldagent.models.version import Version
from fieldagent.services.config_handler import ConfigurationHandler
from fieldagent.services.connection import ConnectionHandler
from fieldagent.services.controller import Controller
from fieldagent.services.download import DownloadHandler
from fieldagent.services.event_bus import EventBus
from fieldagent.services.event_logger import EventLogger
from fieldagent.services.feedback_channel import FeedbackHandler
from fieldagent.services.package_store import PackageStore
from fieldagent.services.update_handlers import AgentUpdateHandler, DeploymentHandler

PACKAGES_DIR = "packages"


class Agent:
    """Builds the component graph and owns its lifecycle.

    Components are wired explicitly: configuration and the event bus first,
    then connection and storage, then the update targets, feedback, and
    finally the controller that drives them.
    """

    def __init__(
        self,
        config_handler: ConfigurationHandler,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize agent.

        Args:
            config_handler: Configuration source; its event bus is reused if set
            transport: Optional httpx transport for every server request
        """
        self.logger = logging.getLogger("fieldagent.agent")
        self.event_bus = config_handler.event_bus or EventBus()
        config_handler.event_bus = self.event_bus
        self.config_handler = config_handler

        config = config_handler.get()
        work_dir = Path(config.work_dir)

        self.connection = ConnectionHandler(config_handler, transport=transport)
        self.download_handler = DownloadHandler(self.connection, work_dir)
        self.agent_store = PackageStore(
            work_dir / PACKAGES_DIR / UPDATE_TYPE_AGENT,
            base_version=Version.parse(config.agent_version),
        )
        self.deployment_store = PackageStore(work_dir / PACKAGES_DIR / UPDATE_TYPE_DEPLOYMENT)
        self.agent_handler = AgentUpdateHandler(
            self.connection, self.download_handler, self.agent_store
        )
        self.deployment_handler = DeploymentHandler(
            self.connection, self.download_handler, self.deployment_store
        )
        self.feedback_handler = FeedbackHandler(config_handler, self.connection, self.event_bus)
        self.event_logger = EventLogger(self.feedback_handler)
        self.controller = Controller(
            config_handler,
            self.feedback_handler,
            self.agent_handler,
            self.deployment_handler,
            self.event_bus,
        )

    async def start(self) -> None:
        """Start audit logging and schedule the controller (needs a running loop)."""
        config = self.config_handler.get()
        self.logger.info(
            f"Starting agent {config.identification} "
            f"(version {config.agent_version}, server {config.server_url or 'not set'})"
        )
        self.event_logger.start(self.event_bus)
        self.controller.start()

    async def stop(self) -> None:
        """Stop the controller, any running download and close feedback stores."""
        await self.controller.stop()
        handle = self.download_handler.active_handle()
        if handle is not None:
            handle.stop()
            await handle.wait()
        await self.event_logger.flush()
        self.event_logger.stop()
        self.feedback_handler.close()
        self.logger.info("Agent stopped")

    def status(self) -> Dict[str, Any]:
        """Aggregate view for the status API."""
        config = self.config_handler.get()
        download = None
        handle = self.download_handler.active_handle()
        if handle is not None:
            download = {
                "url": handle.url,
                "bytes_read": handle.bytes_read,
                "total_bytes": handle.total_bytes,
            }
        return {
            "identification": config.identification,
            "server_url": config.server_url,
            "installed": {
                UPDATE_TYPE_AGENT: str(self.agent_handler.get_installed_version()),
                UPDATE_TYPE_DEPLOYMENT: str(self.deployment_handler.get_installed_version()),
            },
            "download": download,
            "feedback_channels": self.feedback_handler.get_channel_names(),
            "controller": self.controller.status(),
        }
