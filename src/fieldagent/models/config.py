"""Agent configuration snapshot."""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentConfig(BaseModel):
    """Immutable configuration snapshot.

    A new snapshot replaces the old one as a whole; components read the
    latest snapshot at the start of each operation.
    """

    model_config = ConfigDict(frozen=True)

    # Server and identity
    server_url: Optional[str] = Field(
        None, pattern=r"^https?://.+", description="Management server base URL"
    )
    identification: str = Field(
        default="default-target", min_length=1, description="Agent (target) identification"
    )
    work_dir: Path = Field(default=Path("./data"), description="Agent private data directory")
    agent_version: str = Field(default="0.0.0", description="Version of the running agent")
    agent_symbolic_name: str = Field(
        default="fieldagent", min_length=1, description="Agent artifact name on the server"
    )

    # Controller
    controller_disabled: bool = Field(default=False, description="Do not schedule sync cycles")
    streaming: bool = Field(
        default=False, description="Install while downloading instead of download-then-install"
    )
    fix_package: bool = Field(default=True, description="Request fix packages for deployments")
    sync_delay: int = Field(default=5, ge=0, description="Seconds before the first sync")
    sync_interval: int = Field(default=30, ge=1, description="Seconds between syncs")
    max_retries: int = Field(default=2, ge=1, description="Install attempts per version")

    # Feedback
    feedback_channels: List[str] = Field(
        default_factory=lambda: ["auditlog"], description="Feedback channel names"
    )
    feedback_max_store_size: int = Field(
        default=1024 * 1024, ge=1024, description="Total bytes kept per feedback channel"
    )

    # Connection
    connect_timeout: float = Field(default=10.0, gt=0, description="HTTP connect timeout (s)")
    read_timeout: float = Field(default=30.0, gt=0, description="HTTP read timeout (s)")
    auth_username: Optional[str] = Field(None, description="HTTP basic auth user")
    auth_password: Optional[str] = Field(None, description="HTTP basic auth password")
    client_cert: Optional[Path] = Field(None, description="TLS client certificate (PEM)")
    client_key: Optional[Path] = Field(None, description="TLS client key (PEM)")
    verify: bool = Field(default=True, description="Verify server TLS certificates")

    # Downloads
    download_chunk_size: int = Field(
        default=-1, description="Bytes per range request, -1 for unbounded requests"
    )
    download_buffer_size: int = Field(
        default=64 * 1024, ge=1, description="Read buffer size while downloading"
    )

    # Logging and local API
    log_file: str = Field(default="./logs/fieldagent.log", description="Rotating log file path")
    log_level: str = Field(default="INFO", description="Logging level name")
    api_host: str = Field(default="127.0.0.1", description="Status API bind address")
    api_port: int = Field(default=12316, ge=1, le=65535, description="Status API port")

    @field_validator("feedback_channels")
    @classmethod
    def valid_channel_names(cls, v: List[str]) -> List[str]:
        """Channel names become file name prefixes and URL segments."""
        for name in v:
            if not name or not name.replace("_", "").replace(".", "").isalnum():
                raise ValueError(f"Invalid feedback channel name: {name!r}")
        if len(set(v)) != len(v):
            raise ValueError("Feedback channel names must be unique")
        return v

    @field_validator("log_level")
    @classmethod
    def valid_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("download_chunk_size")
    @classmethod
    def valid_chunk_size(cls, v: int) -> int:
        if v == 0 or v < -1:
            raise ValueError("download_chunk_size must be positive or -1")
        return v
