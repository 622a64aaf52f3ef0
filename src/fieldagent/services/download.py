"""Resumable downloads into deterministic staging files."""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import httpx

from fieldagent.exceptions import ProtocolError, RetryAfterError
from fieldagent.models.status import DownloadResult, DownloadState
from fieldagent.services.connection import ConnectionHandler
from fieldagent.services.content_range import ContentRangeStream

DOWNLOADS_DIR = "downloads"


class DownloadProgressListener:
    """Receives download callbacks; the default implementation ignores them."""

    def progress(self, bytes_read: int, total_bytes: int) -> None:
        """Called after every write; total_bytes is -1 when unknown."""

    def completed(self, result: DownloadResult) -> None:
        """Called once with the terminal result."""


class DownloadHandler:
    """Hands out download handles whose staging files survive restarts."""

    def __init__(self, connection: ConnectionHandler, work_dir: Path):
        """Initialize download handler.

        Args:
            connection: Connection handler used to create HTTP clients
            work_dir: Agent data directory; staging files live in {work_dir}/downloads
        """
        self.logger = logging.getLogger("fieldagent.download")
        self.connection = connection
        self.download_dir = Path(work_dir) / DOWNLOADS_DIR
        self._handles: Dict[str, "DownloadHandle"] = {}

    def staging_path(self, url: str) -> Path:
        """Deterministic staging file for url."""
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
        return self.download_dir / f"{digest}.part"

    def get_handle(self, url: str, headers: Optional[Dict[str, str]] = None) -> "DownloadHandle":
        """Return the handle for url, creating it on first use."""
        handle = self._handles.get(url)
        if handle is None:
            handle = DownloadHandle(self, url, self.staging_path(url), headers)
            self._handles[url] = handle
        return handle

    def active_handle(self) -> Optional["DownloadHandle"]:
        """The handle with a transfer in flight, if any."""
        for handle in self._handles.values():
            if handle.running:
                return handle
        return None

    def release(self, handle: "DownloadHandle") -> None:
        """Forget handle; the next get_handle for its URL creates a new one."""
        if self._handles.get(handle.url) is handle:
            del self._handles[handle.url]


class DownloadHandle:
    """One resumable transfer of a URL into its staging file.

    Only one transfer may run per handle. Bytes are appended to the staging
    file, which is the resume checkpoint: a STOPPED or transport-FAILED
    transfer leaves it in place so the next start() continues from its size.
    """

    def __init__(
        self,
        handler: DownloadHandler,
        url: str,
        file_path: Path,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.logger = logging.getLogger("fieldagent.download")
        self.handler = handler
        self.url = url
        self.file_path = file_path
        self.headers = dict(headers or {})
        self.bytes_read = 0
        self.total_bytes = -1
        self._task: Optional[asyncio.Task] = None
        self._abort = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, listener: Optional[DownloadProgressListener] = None) -> asyncio.Task:
        """Start the transfer on the running event loop.

        Args:
            listener: Progress/completion callbacks

        Returns:
            Task resolving to the DownloadResult

        Raises:
            RuntimeError: If a transfer is already running on this handle
        """
        if self.running:
            raise RuntimeError(f"Download already in progress: {self.url}")
        self._abort = False
        self._task = asyncio.create_task(self._download(listener or DownloadProgressListener()))
        return self._task

    async def start_and_wait(
        self,
        listener: Optional[DownloadProgressListener] = None,
        timeout: Optional[float] = None,
    ) -> DownloadResult:
        """Start the transfer and wait for its result.

        Raises:
            RuntimeError: If a transfer is already running on this handle
            asyncio.TimeoutError: If no result arrived within timeout (transfer is stopped)
        """
        task = self.start(listener)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            self.stop()
            raise
        except asyncio.CancelledError:
            self.stop()
            raise

    def stop(self) -> None:
        """Request cooperative cancellation; the staging file is kept."""
        task = self._task
        if task is None or task.done() or self._abort:
            return
        self.logger.info(f"Stopping download: {self.url}")
        self._abort = True
        task.cancel()

    async def wait(self) -> Optional[DownloadResult]:
        """Wait for the current transfer, if any, and return its result."""
        task = self._task
        if task is None:
            return None
        return await task

    def discard(self) -> None:
        """Stop any transfer and delete the staging file."""
        try:
            self.stop()
        finally:
            self.file_path.unlink(missing_ok=True)
            self.bytes_read = 0
            self.total_bytes = -1
            self.handler.release(self)
            self.logger.debug(f"Discarded staging file {self.file_path}")

    async def _download(self, listener: DownloadProgressListener) -> DownloadResult:
        try:
            state = await self._transfer(listener)
            result = self._result(state)
        except asyncio.CancelledError:
            result = self._result(DownloadState.STOPPED)
            self.logger.info(f"Download stopped at {result.bytes_read} bytes: {self.url}")
            self._notify(listener, result)
            if not self._abort:
                raise
            return result
        except (RetryAfterError, ProtocolError, httpx.HTTPError, OSError) as e:
            if isinstance(e, ProtocolError):
                # Content on disk cannot be trusted for a resume
                self.file_path.unlink(missing_ok=True)
            result = self._result(DownloadState.FAILED, error=e)
            self.logger.warning(f"Download failed: {self.url}: {e}")

        if result.successful:
            self.logger.info(f"Download completed ({result.bytes_read} bytes): {self.url}")
        elif result.state == DownloadState.STOPPED:
            self.logger.info(f"Download stopped at {result.bytes_read} bytes: {self.url}")
        self._notify(listener, result)
        return result

    async def _transfer(self, listener: DownloadProgressListener) -> DownloadState:
        config = self.handler.connection.config_handler.get()
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        offset = self.file_path.stat().st_size if self.file_path.exists() else 0
        mode = "ab" if offset > 0 else "wb"
        if offset > 0:
            self.logger.info(f"Resuming download from byte {offset}: {self.url}")
        else:
            self.logger.info(f"Starting download: {self.url}")
        self.bytes_read = offset

        async with self.handler.connection.create_client() as client:
            async with ContentRangeStream(
                client,
                self.url,
                start_offset=offset,
                chunk_size=config.download_chunk_size,
                headers=self.headers,
            ) as stream:
                async with aiofiles.open(self.file_path, mode) as f:
                    try:
                        while not self._abort:
                            data = await stream.read(config.download_buffer_size)
                            if not data:
                                break
                            await f.write(data)
                            self.bytes_read = stream.read_total
                            self.total_bytes = stream.total_size
                            self._progress(listener)
                    finally:
                        await f.flush()

        return DownloadState.STOPPED if self._abort else DownloadState.SUCCESSFUL

    def _result(self, state: DownloadState, error: Optional[BaseException] = None) -> DownloadResult:
        size = self.file_path.stat().st_size if self.file_path.exists() else 0
        return DownloadResult(
            state=state,
            file=self.file_path if state == DownloadState.SUCCESSFUL else None,
            error=error,
            bytes_read=size,
        )

    def _progress(self, listener: DownloadProgressListener) -> None:
        try:
            listener.progress(self.bytes_read, self.total_bytes)
        except Exception as e:
            self.logger.error(f"Download listener failed: {e}", exc_info=True)

    def _notify(self, listener: DownloadProgressListener, result: DownloadResult) -> None:
        try:
            listener.completed(result)
        except Exception as e:
            self.logger.error(f"Download listener failed: {e}", exc_info=True)
