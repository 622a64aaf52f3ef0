"""HTTP connection factory and shared response checks."""

import logging
import ssl
from typing import Optional

import httpx

from fieldagent.exceptions import DEFAULT_RETRY_SECONDS, ProtocolError, RetryAfterError
from fieldagent.services.config_handler import ConfigurationHandler

HEADER_RETRY_AFTER = "Retry-After"

# Backoff while no server URL is known yet
NO_SERVER_RETRY_SECONDS = 10


def parse_retry_after(value: Optional[str], default: int = DEFAULT_RETRY_SECONDS) -> int:
    """Parse a Retry-After header in delta-seconds form.

    Args:
        value: Header value (may be None)
        default: Delay used when the header is absent or unparseable

    Returns:
        Delay in seconds
    """
    if value is None:
        return default
    try:
        seconds = int(value.strip())
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


def check_response(response: httpx.Response) -> None:
    """Accept 200/206, map 503 to RetryAfterError and anything else to ProtocolError.

    Raises:
        RetryAfterError: Server asked to back off (503)
        ProtocolError: Any other unexpected status code
    """
    status = response.status_code
    if status in (200, 206):
        return
    if status == 503:
        raise RetryAfterError(parse_retry_after(response.headers.get(HEADER_RETRY_AFTER)))
    raise ProtocolError(f"Unable to handle server response code {status} for {response.url}")


class ConnectionHandler:
    """Creates configured httpx clients for server traffic.

    Every operation gets a client built from the configuration snapshot
    current at that moment (timeouts, basic auth, TLS client certificate).
    """

    def __init__(
        self,
        config_handler: ConfigurationHandler,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize connection handler.

        Args:
            config_handler: Source of connection settings
            transport: Optional transport override (e.g. httpx.MockTransport)
        """
        self.logger = logging.getLogger("fieldagent.connection")
        self.config_handler = config_handler
        self.transport = transport

    def server_url(self) -> str:
        """Base server URL without a trailing slash.

        Raises:
            RetryAfterError: If no server URL is configured yet
        """
        url = self.config_handler.get().server_url
        if not url:
            raise RetryAfterError(NO_SERVER_RETRY_SECONDS, "No server URL configured")
        return url.rstrip("/")

    def create_client(self) -> httpx.AsyncClient:
        """Build an AsyncClient for one operation; caller closes it."""
        config = self.config_handler.get()
        timeout = httpx.Timeout(config.read_timeout, connect=config.connect_timeout)

        auth = None
        if config.auth_username:
            auth = httpx.BasicAuth(config.auth_username, config.auth_password or "")

        kwargs = {"timeout": timeout, "auth": auth}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        elif config.client_cert:
            context = ssl.create_default_context()
            if not config.verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            context.load_cert_chain(
                str(config.client_cert), str(config.client_key) if config.client_key else None
            )
            kwargs["verify"] = context
        else:
            kwargs["verify"] = config.verify

        return httpx.AsyncClient(**kwargs)
