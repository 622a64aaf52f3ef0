"""Periodic sync loop: feedback first, then self-update, then deployment update."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from fieldagent.exceptions import RetryAfterError
from fieldagent.models.config import AgentConfig
from fieldagent.models.version import EMPTY_VERSION
from fieldagent.services.config_handler import ConfigurationHandler
from fieldagent.services.event_bus import TOPIC_CONFIG_CHANGED, EventBus
from fieldagent.services.feedback_channel import FeedbackHandler
from fieldagent.services.installer import (
    STRATEGY_DOWNLOAD,
    STRATEGY_STREAMING,
    Installer,
    create_installer,
)
from fieldagent.services.update_handlers import UpdateHandlerBase


class Controller:
    """Drives sync cycles on a single asyncio task.

    Each cycle reads the latest configuration snapshot, flushes all feedback
    channels and runs the installer of every update target. Errors never end
    the loop; a server backoff aborts the rest of the cycle and sets the
    delay until the next one.
    """

    def __init__(
        self,
        config_handler: ConfigurationHandler,
        feedback_handler: FeedbackHandler,
        agent_handler: UpdateHandlerBase,
        deployment_handler: UpdateHandlerBase,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize controller.

        Args:
            config_handler: Source of sync settings
            feedback_handler: Feedback channels to flush each cycle
            agent_handler: Self-update target
            deployment_handler: Deployment package target
            event_bus: Bus for installation events and config changes
        """
        self.logger = logging.getLogger("fieldagent.controller")
        self.config_handler = config_handler
        self.feedback_handler = feedback_handler
        self.update_handlers = [agent_handler, deployment_handler]
        self.event_bus = event_bus
        self.installers: Dict[str, Installer] = {}
        self.last_sync: Optional[datetime] = None
        self.next_delay: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        if event_bus is not None:
            event_bus.subscribe(TOPIC_CONFIG_CHANGED, self._on_config_changed)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the sync loop unless disabled by configuration."""
        config = self.config_handler.get()
        if config.controller_disabled:
            self.logger.info("Controller disabled by configuration")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self.run())
        self.logger.debug(f"Controller scheduled to sync in {config.sync_delay} seconds")

    async def stop(self) -> None:
        """Cancel the loop; partial downloads stay on disk for the next start."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for installer in self.installers.values():
            installer.stop()
        self.logger.info("Controller stopped")

    async def run(self) -> None:
        """Sleep, sync, repeat until cancelled."""
        delay = self.config_handler.get().sync_delay
        while True:
            self.next_delay = delay
            await asyncio.sleep(delay)
            delay = await self.sync_once()

    async def sync_once(self) -> int:
        """Run one sync cycle.

        Returns:
            Seconds until the next cycle (sync interval or server backoff)
        """
        config = self.config_handler.get()
        interval = config.sync_interval
        self.logger.debug("Controller syncing...")
        try:
            await self._sync_feedback()
            for handler in self.update_handlers:
                await self._run_update(handler, config)
        except RetryAfterError as e:
            interval = e.seconds
            self.logger.info(f"Sync received retry-after from server, next sync in {interval}s")
        except Exception as e:
            self.logger.error(f"Sync aborted due to unexpected error: {e}", exc_info=True)

        self.last_sync = datetime.now(timezone.utc)
        self.next_delay = interval
        self.logger.debug(f"Sync completed, rescheduled in {interval} seconds")
        return interval

    def status(self) -> Dict[str, Any]:
        """Snapshot of installer state for the status API."""
        return {
            "running": self.running,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "next_sync_in": self.next_delay,
            "installers": {
                update_type: {
                    "strategy": installer.strategy,
                    "last_version": str(installer.state.last_version)
                    if installer.state.last_version is not None
                    else None,
                    "last_succeeded": installer.state.last_succeeded,
                    "failure_count": installer.state.failure_count,
                }
                for update_type, installer in self.installers.items()
            },
        }

    async def _sync_feedback(self) -> None:
        self.logger.debug("Synchronizing feedback channels")
        for name in self.feedback_handler.get_channel_names():
            try:
                channel = self.feedback_handler.get_channel(name)
                if channel is not None:
                    await channel.send_feedback()
            except RetryAfterError:
                raise
            except (httpx.HTTPError, OSError) as e:
                self.logger.warning(f"Feedback sync of channel {name} failed: {e}")

    async def _run_update(self, handler: UpdateHandlerBase, config: AgentConfig) -> None:
        update_type = handler.update_type
        self.logger.debug(f"Checking for {update_type} update")
        try:
            current = handler.get_installed_version()
            highest = await handler.get_highest_available_version()
            if highest <= current:
                self.logger.debug(f"No {update_type} update available for version {current}")
                return
            installer = self._installer_for(handler, config.streaming)
            # A fix package needs an installed base to apply to
            fix_package = (
                config.fix_package and handler.supports_fix_packages and current != EMPTY_VERSION
            )
            await installer.install_update(current, highest, fix_package, config.max_retries)
        except RetryAfterError:
            raise
        except (httpx.HTTPError, OSError) as e:
            self.logger.warning(f"{update_type} update check failed: {e}")

    def _installer_for(self, handler: UpdateHandlerBase, streaming: bool) -> Installer:
        installer = self.installers.get(handler.update_type)
        strategy = STRATEGY_STREAMING if streaming else STRATEGY_DOWNLOAD
        if installer is not None and installer.strategy == strategy:
            return installer
        if installer is not None:
            self.logger.info(
                f"Switching {handler.update_type} installer from {installer.strategy} "
                f"to {strategy}, discarding its state"
            )
            installer.reset()
        installer = create_installer(streaming, handler, self.event_bus)
        self.installers[handler.update_type] = installer
        return installer

    def _on_config_changed(self, event: Dict[str, Any]) -> None:
        self.logger.info(f"Configuration changed ({event.get('changed')}), applied from next cycle")
