"""Transfer and download status enums and result models."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TransferState(str, Enum):
    """Lifecycle of a content-range stream.

    State transitions:
    initial → open → eof
        ↓       ↓      ↓
        └──→ closed ←──┘
    """

    INITIAL = "initial"
    OPEN = "open"
    EOF = "eof"
    CLOSED = "closed"


class DownloadState(str, Enum):
    """Terminal state of a download attempt."""

    SUCCESSFUL = "successful"
    STOPPED = "stopped"
    FAILED = "failed"


class DownloadResult(BaseModel):
    """Outcome of one DownloadHandle run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    state: DownloadState = Field(..., description="Terminal state of the download")
    file: Optional[Path] = Field(None, description="Staging file, set when successful")
    error: Optional[BaseException] = Field(None, description="Failure cause when failed")
    bytes_read: int = Field(default=0, ge=0, description="Staging file size at completion")

    @property
    def successful(self) -> bool:
        return self.state == DownloadState.SUCCESSFUL
