"""Install strategies with per-version retry backoff."""

import logging
from typing import Optional

from fieldagent.exceptions import RetryAfterError
from fieldagent.models.status import DownloadState
from fieldagent.models.update import InstallerState, UpdateInfo
from fieldagent.models.version import Version
from fieldagent.services.download import DownloadHandle, DownloadProgressListener
from fieldagent.services.event_bus import (
    TOPIC_INSTALLATION_COMPLETE,
    TOPIC_INSTALLATION_START,
    EventBus,
)
from fieldagent.services.update_handlers import UpdateHandlerBase

STRATEGY_STREAMING = "streaming"
STRATEGY_DOWNLOAD = "download"


class Installer:
    """Decides whether to attempt an update and records the outcome.

    State transitions (per update target):
    no-attempt-made → attempting(V) → succeeded(V)
                           ↓
                      failed(V, n) → attempting(V) while n < max_retries

    Once V failed max_retries times in a row it is skipped until the server
    advertises a different version.
    """

    strategy = ""

    def __init__(self, handler: UpdateHandlerBase, event_bus: Optional[EventBus] = None):
        """Initialize installer.

        Args:
            handler: Update target this installer works for
            event_bus: Bus for installation start/complete events
        """
        self.logger = logging.getLogger(f"fieldagent.installer.{handler.update_type}")
        self.handler = handler
        self.event_bus = event_bus
        self.state = InstallerState()

    async def install_update(
        self,
        from_version: Version,
        to_version: Version,
        fix_package: bool,
        max_retries: int,
    ) -> bool:
        """Attempt to install to_version unless it is in backoff.

        Args:
            from_version: Installed version
            to_version: Version to install
            fix_package: Request an incremental package relative to from_version
            max_retries: Consecutive failures after which to_version is skipped

        Returns:
            True if an attempt was made (successful or not)

        Raises:
            RetryAfterError: Server asked to back off; installer state is untouched
        """
        if self.state.should_skip(to_version, max_retries):
            self.logger.info(
                f"Ignoring {self.handler.update_type} update {from_version} => {to_version} "
                f"because max retries reached ({self.state.failure_count}/{max_retries})"
            )
            return False

        self.state.track(to_version)
        update_info = UpdateInfo(
            update_type=self.handler.update_type,
            from_version=from_version,
            to_version=to_version,
            fix_package=fix_package,
        )
        self._publish_start(update_info)

        try:
            completed = await self._do_install(update_info)
        except RetryAfterError as e:
            self.logger.info(f"Server busy during {update_info}, retry after {e.seconds}s")
            self._publish_complete(update_info, False, message=str(e), retry_after=e.seconds)
            raise
        except Exception as e:
            self.state.record_failure()
            self.logger.warning(
                f"Update {update_info} failed "
                f"({self.state.failure_count}/{max_retries}): {getattr(e, 'reason', e)}"
            )
            self._publish_complete(update_info, False, cause=e)
            return True

        if not completed:
            self._publish_complete(update_info, False, message="Download stopped")
            return True

        self.state.record_success()
        self.logger.info(f"Update {update_info} installed")
        self._publish_complete(update_info, True)
        return True

    def reset(self) -> None:
        """Forget all retry state and any partial work."""
        self.state.reset()
        self._do_reset()

    def stop(self) -> None:
        """Forget retry state but keep partial work for the next run."""
        self.state.reset()
        self._do_stop()

    async def _do_install(self, update_info: UpdateInfo) -> bool:
        """Fetch and install; returns False when the fetch was stopped."""
        raise NotImplementedError

    def _do_reset(self) -> None:
        pass

    def _do_stop(self) -> None:
        pass

    def _publish_start(self, update_info: UpdateInfo) -> None:
        if self.event_bus is None:
            return
        self.event_bus.publish(
            TOPIC_INSTALLATION_START,
            {
                "type": update_info.update_type,
                "name": self.handler.identification,
                "version": str(update_info.to_version),
            },
        )

    def _publish_complete(
        self,
        update_info: UpdateInfo,
        success: bool,
        cause: Optional[BaseException] = None,
        message: Optional[str] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        if self.event_bus is None:
            return
        payload = {
            "type": update_info.update_type,
            "name": self.handler.identification,
            "version": str(update_info.to_version),
            "success": success,
        }
        if cause is not None:
            payload["cause"] = cause
            payload["msg"] = getattr(cause, "reason", None) or f"{type(cause).__name__}: {cause}"
        elif message:
            payload["msg"] = message
        if retry_after is not None:
            # Postponed by the server, not a failed install
            payload["retry_after"] = retry_after
        self.event_bus.publish(TOPIC_INSTALLATION_COMPLETE, payload)


class StreamingInstaller(Installer):
    """Feeds the server stream straight into the install operation."""

    strategy = STRATEGY_STREAMING

    async def _do_install(self, update_info: UpdateInfo) -> bool:
        self.logger.info(f"Installing streaming update {update_info}")
        async with self.handler.connection.create_client() as client:
            async with self.handler.open_stream(
                client, update_info.to_version, update_info.fix_package
            ) as stream:
                await self.handler.install(update_info, stream)
        return True


class _ProgressLogger(DownloadProgressListener):
    """Logs download progress in 10% steps."""

    def __init__(self, logger: logging.Logger, update_info: UpdateInfo):
        self.logger = logger
        self.update_info = update_info
        self._last_percent = -10

    def progress(self, bytes_read: int, total_bytes: int) -> None:
        if total_bytes <= 0:
            return
        percent = int(bytes_read * 100 / total_bytes)
        if percent >= self._last_percent + 10:
            self._last_percent = percent
            self.logger.debug(
                f"Download {self.update_info.to_version}: {percent}% ({bytes_read}/{total_bytes} bytes)"
            )


class DownloadInstaller(Installer):
    """Downloads the artifact into a resumable staging file, then installs it."""

    strategy = STRATEGY_DOWNLOAD

    def __init__(self, handler: UpdateHandlerBase, event_bus: Optional[EventBus] = None):
        super().__init__(handler, event_bus)
        self.download_handle: Optional[DownloadHandle] = None
        self.download_version: Optional[Version] = None

    async def _do_install(self, update_info: UpdateInfo) -> bool:
        handle = self.handler.get_download_handle(update_info.to_version, update_info.fix_package)
        if self.download_handle is not None and self.download_handle is not handle:
            self.logger.info(
                f"Discarding download of {self.download_version}, "
                f"{update_info.to_version} is now available"
            )
            self.download_handle.discard()
        self.download_handle = handle
        self.download_version = update_info.to_version

        self.logger.info(f"Starting download for update {update_info}")
        result = await handle.start_and_wait(_ProgressLogger(self.logger, update_info))

        if result.state == DownloadState.STOPPED:
            self.logger.warning(
                f"Download for {update_info.to_version} stopped at {result.bytes_read} bytes, "
                f"will resume next cycle"
            )
            return False
        if result.state == DownloadState.FAILED:
            if isinstance(result.error, RetryAfterError):
                raise result.error
            raise result.error or OSError(f"Download of {update_info.to_version} failed")

        try:
            self.logger.info(f"Installing downloaded update {update_info}")
            await self.handler.install(update_info, result.file)
        finally:
            handle.discard()
            self.download_handle = None
            self.download_version = None
        return True

    def _do_reset(self) -> None:
        if self.download_handle is not None:
            self.logger.info(f"Discarding download of {self.download_version} because of reset")
            self.download_handle.discard()
        self.download_handle = None
        self.download_version = None

    def _do_stop(self) -> None:
        if self.download_handle is not None:
            self.download_handle.stop()


def create_installer(
    streaming: bool, handler: UpdateHandlerBase, event_bus: Optional[EventBus] = None
) -> Installer:
    """Build a fresh installer for the configured strategy."""
    if streaming:
        return StreamingInstaller(handler, event_bus)
    return DownloadInstaller(handler, event_bus)
