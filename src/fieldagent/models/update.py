"""Update attempt models owned by the update controller."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from fieldagent.models.version import Version

UPDATE_TYPE_AGENT = "agent"
UPDATE_TYPE_DEPLOYMENT = "deployment"


class UpdateInfo(BaseModel):
    """Immutable description of a single install attempt."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    update_type: str = Field(..., description="Update target type name (agent/deployment)")
    from_version: Version = Field(..., description="Currently installed version")
    to_version: Version = Field(..., description="Version being installed")
    fix_package: bool = Field(
        default=False, description="Incremental package relative to from_version"
    )

    @field_serializer("from_version", "to_version")
    def serialize_version(self, version: Version) -> str:
        return str(version)

    def __str__(self) -> str:
        kind = "fix package" if self.fix_package else "full package"
        return f"{self.update_type} {self.from_version} => {self.to_version} ({kind})"


class InstallerState(BaseModel):
    """Retry bookkeeping for one update target.

    State transitions:
    no-attempt-made → attempting(V) → succeeded(V)
                           ↓
                      failed(V, n) → attempting(V) while n < max_retries
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=True)

    last_version: Optional[Version] = Field(None, description="Last version attempted")
    last_succeeded: bool = Field(
        default=True, description="Whether the last attempt of last_version succeeded"
    )
    failure_count: int = Field(default=0, ge=0, description="Consecutive failures for last_version")

    def track(self, version: Version) -> None:
        """Start tracking a new version, forgetting failures of the previous one."""
        if self.last_version is None or self.last_version != version:
            self.last_version = version
            self.last_succeeded = True
            self.failure_count = 0

    def should_skip(self, version: Version, max_retries: int) -> bool:
        """True when version already failed max_retries times in a row."""
        return (
            self.last_version is not None
            and self.last_version == version
            and not self.last_succeeded
            and self.failure_count >= max_retries
        )

    def record_success(self) -> None:
        self.last_succeeded = True
        self.failure_count = 0

    def record_failure(self) -> None:
        self.last_succeeded = False
        self.failure_count += 1

    def reset(self) -> None:
        self.last_version = None
        self.last_succeeded = True
        self.failure_count = 0
