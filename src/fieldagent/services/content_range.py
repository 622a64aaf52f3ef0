"""Byte-range aware HTTP content stream with transparent chunk re-opening."""

import logging
from typing import Dict, Optional, Tuple

import httpx

from fieldagent.exceptions import ProtocolError, RetryAfterError
from fieldagent.models.status import TransferState
from fieldagent.services.connection import HEADER_RETRY_AFTER, parse_retry_after

HEADER_RANGE = "Range"
HEADER_CONTENT_RANGE = "Content-Range"
HEADER_PACKAGE_SIZE = "X-Package-Size"

SC_OK = 200
SC_PARTIAL_CONTENT = 206
SC_RANGE_NOT_SATISFIABLE = 416
SC_SERVICE_UNAVAILABLE = 503


def parse_content_range(value: str) -> Tuple[int, int, int]:
    """Parse ``bytes <start>-<end>/<total|*>`` (or ``bytes */<total>``).

    Returns:
        Tuple of (start, chunk_length, total); start and chunk_length are -1
        when the range part is ``*`` or unparseable, total is -1 for ``*``

    Raises:
        ProtocolError: If the header is not a bytes range or the total is invalid
    """
    if not value.startswith("bytes "):
        raise ProtocolError(f"Server returned non-byte Content-Range {value!r}")
    range_part, sep, total_part = value[6:].strip().partition("/")
    if not sep:
        raise ProtocolError(f"Server returned malformed Content-Range {value!r}")

    start, chunk_length = -1, -1
    if range_part != "*":
        low, _, high = range_part.partition("-")
        try:
            start = int(low)
            chunk_length = int(high) - start + 1
        except ValueError:
            start, chunk_length = -1, -1

    if total_part == "*":
        return start, chunk_length, -1
    try:
        return start, chunk_length, int(total_part)
    except ValueError:
        raise ProtocolError(f"Server returned malformed Content-Range {value!r}") from None


def _declared_size(response: httpx.Response) -> int:
    """Total size from the server size header, or -1."""
    value = response.headers.get(HEADER_PACKAGE_SIZE)
    try:
        return int(value) if value is not None else -1
    except ValueError:
        return -1


class ContentRangeStream:
    """Async byte stream over an HTTP resource fetched in byte-range chunks.

    Each chunk is a separate GET carrying a ``Range`` header that starts at
    the number of bytes read so far. When a chunk is exhausted the response
    is closed and the next read opens a new one at the advanced offset, so
    a download can be cancelled between reads without holding a connection.

    State transitions:
    initial → open → eof
        ↓       ↓      ↓
        └──→ closed ←──┘
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        url: str,
        start_offset: int = 0,
        chunk_size: int = -1,
        headers: Optional[Dict[str, str]] = None,
    ):
        """Initialize content stream.

        Args:
            client: HTTP client used for every chunk request
            url: Resource URL
            start_offset: Bytes already held by the caller
            chunk_size: Bytes per range request, <= 0 for open-ended requests
            headers: Extra request headers
        """
        if start_offset < 0:
            raise ValueError(f"Negative start offset: {start_offset}")
        self.logger = logging.getLogger("fieldagent.content_range")
        self.client = client
        self.url = url
        self.chunk_size = chunk_size
        self.headers = dict(headers or {})
        self.state = TransferState.INITIAL
        self.read_total = start_offset
        self.read_chunk = 0
        self.chunk_length = -1
        self.total_size = -1

        self._response: Optional[httpx.Response] = None
        self._body = None
        self._pending = b""
        self._negotiated = False

    async def __aenter__(self) -> "ContentRangeStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        data = await self.read()
        if not data:
            raise StopAsyncIteration
        return data

    def available(self) -> int:
        """Bytes known to be left in the current chunk, 0 when unknown."""
        self._assert_open()
        if self._response is None or self.chunk_length < 0:
            return 0
        return max(self.chunk_length - self.read_chunk, 0)

    async def read(self, size: int = -1) -> bytes:
        """Read up to size bytes (any available amount when size < 0).

        Returns:
            The bytes read, or b"" at the end of the content

        Raises:
            RetryAfterError: Server answered 503 while opening a chunk
            ProtocolError: Server response violated the range protocol
            httpx.TransportError: Connection failure
            ValueError: Stream already closed
        """
        self._assert_open()
        if size == 0:
            return b""
        while await self._prepare_next_chunk():
            data = await self._read_body(size)
            if data:
                self.read_chunk += len(data)
                self.read_total += len(data)
                if self.chunk_length > 0 and self.read_chunk >= self.chunk_length:
                    await self._close_chunk()
                return data

            # Body ended before the chunk was known to be exhausted
            empty_chunk = self.read_chunk == 0
            await self._close_chunk()
            if self.total_size < 0:
                self.state = TransferState.EOF
            elif self.read_total < self.total_size and empty_chunk:
                raise ProtocolError(
                    f"Server returned an empty chunk at offset {self.read_total} "
                    f"of {self.total_size} for {self.url}"
                )
        return b""

    async def aclose(self) -> None:
        if self.state != TransferState.CLOSED:
            self.state = TransferState.CLOSED
            await self._close_chunk()

    def _assert_open(self) -> None:
        if self.state == TransferState.CLOSED:
            raise ValueError("Trying to read from closed stream")
        if self.state == TransferState.INITIAL:
            self.state = TransferState.OPEN

    def _content_remaining(self) -> bool:
        if self.state == TransferState.EOF:
            return False
        if not self._negotiated:
            return True
        if self.total_size >= 0 and self.read_total >= self.total_size:
            self.state = TransferState.EOF
            return False
        return True

    def _range_header(self) -> Optional[str]:
        if self.chunk_size > 0:
            return f"bytes={self.read_total}-{self.read_total + self.chunk_size - 1}"
        if self.read_total > 0:
            return f"bytes={self.read_total}-"
        return None

    async def _prepare_next_chunk(self) -> bool:
        if self._response is None and self._content_remaining():
            await self._open_chunk()
        return self._response is not None and self._content_remaining()

    async def _open_chunk(self) -> None:
        headers = {"Accept-Encoding": "identity", **self.headers}
        range_header = self._range_header()
        if range_header:
            headers[HEADER_RANGE] = range_header
        self.logger.debug(f"Opening chunk {range_header or 'full'} for {self.url}")

        request = self.client.build_request("GET", self.url, headers=headers)
        response = await self.client.send(request, stream=True)
        try:
            chunk_length, total = self._interpret(response)
        except BaseException:
            await response.aclose()
            raise

        if self._negotiated and self.total_size >= 0 and total >= 0 and self.total_size != total:
            await response.aclose()
            raise ProtocolError(
                f"Stream size mismatch between chunks: {self.total_size} != {total} for {self.url}"
            )
        self._negotiated = True
        if total >= 0:
            self.total_size = total
        self.chunk_length = chunk_length
        self.read_chunk = 0

        if response.status_code == SC_RANGE_NOT_SATISFIABLE:
            await response.aclose()
            if self.total_size < 0 or self.read_total < self.total_size:
                raise ProtocolError(
                    f"Range not satisfiable at offset {self.read_total} "
                    f"(total {self.total_size}) for {self.url}"
                )
            self.logger.debug(f"Content already complete at {self.read_total} bytes: {self.url}")
            self.state = TransferState.EOF
            return

        self._response = response
        self._body = response.aiter_bytes()

    def _interpret(self, response: httpx.Response) -> Tuple[int, int]:
        """Map a chunk response onto (chunk_length, total_size)."""
        status = response.status_code
        if status == SC_OK:
            if self.read_total > 0:
                raise ProtocolError(
                    "Server returned complete content instead of (requested) partial content"
                )
            length = response.headers.get("Content-Length")
            total = int(length) if length and length.isdigit() else _declared_size(response)
            return total, total

        if status == SC_PARTIAL_CONTENT:
            content_range = response.headers.get(HEADER_CONTENT_RANGE)
            if content_range is None:
                raise ProtocolError("Server returned no Content-Range for partial content")
            start, chunk_length, total = parse_content_range(content_range)
            if start >= 0 and start != self.read_total:
                raise ProtocolError(
                    f"Server returned range starting at {start}, requested {self.read_total}"
                )
            if total < 0:
                total = _declared_size(response)
            return chunk_length, total

        if status == SC_RANGE_NOT_SATISFIABLE:
            content_range = response.headers.get(HEADER_CONTENT_RANGE)
            if content_range is not None:
                _, _, total = parse_content_range(content_range)
                return 0, total

        if status == SC_SERVICE_UNAVAILABLE:
            raise RetryAfterError(parse_retry_after(response.headers.get(HEADER_RETRY_AFTER)))

        raise ProtocolError(f"Unknown/unexpected status code {status} for {self.url}")

    async def _read_body(self, size: int) -> bytes:
        if not self._pending:
            try:
                self._pending = await self._body.__anext__()
            except StopAsyncIteration:
                return b""
        if size < 0 or size >= len(self._pending):
            data, self._pending = self._pending, b""
        else:
            data, self._pending = self._pending[:size], self._pending[size:]
        return data

    async def _close_chunk(self) -> None:
        response, self._response = self._response, None
        self._body = None
        self._pending = b""
        if response is not None:
            await response.aclose()
