"""Pydantic models for the local status API."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DownloadProgress(BaseModel):
    """Transfer currently in flight."""

    url: str = Field(..., description="Artifact URL being downloaded")
    bytes_read: int = Field(..., ge=0, description="Bytes in the staging file")
    total_bytes: int = Field(..., description="Artifact size, -1 if unknown")


class InstallerStatus(BaseModel):
    strategy: str = Field(..., description="streaming or download", examples=["download"])
    last_version: Optional[str] = Field(None, description="Last version attempted")
    last_succeeded: bool = Field(..., description="Whether the last attempt installed")
    failure_count: int = Field(..., ge=0, description="Consecutive failures of last_version")


class ControllerStatus(BaseModel):
    running: bool = Field(..., description="Sync loop is scheduled")
    last_sync: Optional[str] = Field(None, description="ISO 8601 time of the last cycle")
    next_sync_in: Optional[int] = Field(None, description="Seconds until the next cycle")
    installers: Dict[str, InstallerStatus] = Field(default_factory=dict)


class StatusData(BaseModel):
    """Agent status nested in response."""

    identification: str = Field(..., description="Target identification", examples=["printer-0042"])
    server_url: Optional[str] = Field(None, description="Management server base URL")
    installed: Dict[str, str] = Field(
        ...,
        description="Installed version per update target",
        examples=[{"agent": "1.0.0", "deployment": "2.3.1"}],
    )
    download: Optional[DownloadProgress] = Field(None, description="Active download, if any")
    feedback_channels: List[str] = Field(..., description="Configured feedback channels")
    controller: ControllerStatus


class StatusResponse(BaseModel):
    """GET /api/v1.0/status response."""

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success", description="Status message")
    data: StatusData


class ConfigUpdateRequest(BaseModel):
    """PUT /api/v1.0/config payload.

    Only the given fields change; values are validated against the full
    configuration model.

    Example:
        {
            "server_url": "https://mgmt.example.com",
            "sync_interval": 60
        }
    """

    model_config = ConfigDict(extra="allow")


class SuccessResponse(BaseModel):
    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[dict] = Field(None, description="Optional response data")


class ErrorResponse(BaseModel):
    """Error response.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (400/500/503)")
    msg: str = Field(..., description="Error message")
