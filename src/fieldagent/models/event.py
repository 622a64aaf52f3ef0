"""Feedback event records and their text representation."""

import time
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from fieldagent.models.range_set import SortedRangeSet

# Audit event types recorded in the "auditlog" channel
DEPLOYMENTADMIN_BASE = 2000
DEPLOYMENTADMIN_INSTALL = DEPLOYMENTADMIN_BASE + 1
DEPLOYMENTADMIN_UNINSTALL = DEPLOYMENTADMIN_BASE + 2
DEPLOYMENTADMIN_COMPLETE = DEPLOYMENTADMIN_BASE + 3
DEPLOYMENTCONTROL_BASE = 3000
DEPLOYMENTCONTROL_INSTALL = DEPLOYMENTCONTROL_BASE + 1
TARGETPROPERTIES_BASE = 4000
TARGETPROPERTIES_SET = TARGETPROPERTIES_BASE + 1

KEY_ID = "id"
KEY_NAME = "name"
KEY_VERSION = "version"
KEY_MSG = "msg"
KEY_TYPE = "type"
KEY_SUCCESS = "success"
KEY_RETRY_AFTER = "retryafter"

_ESCAPES = {"$": "$$", ",": "$k", "\n": "$n", "\r": "$r", " ": "$s"}
_UNESCAPES = {"$": "$", "k": ",", "n": "\n", "r": "\r", "s": " "}


def encode(value: str) -> str:
    """Escape a value so it is safe inside a comma separated representation."""
    return "".join(_ESCAPES.get(char, char) for char in value)


def decode(value: str) -> str:
    """Reverse of :func:`encode`.

    Raises:
        ValueError: On a dangling or unknown escape sequence
    """
    result = []
    chars = iter(value)
    for char in chars:
        if char != "$":
            result.append(char)
            continue
        code = next(chars, None)
        if code not in _UNESCAPES:
            raise ValueError(f"Invalid escape sequence in {value!r}")
        result.append(_UNESCAPES[code])
    return "".join(result)


class LogRecord(BaseModel):
    """A single feedback event; immutable once appended to a store."""

    model_config = ConfigDict(frozen=True)

    target_id: str = Field(default="", description="Originator (agent identification)")
    store_id: int = Field(..., ge=0, description="Store era the event was written in")
    id: int = Field(..., ge=1, description="Sequential id within the store")
    time: int = Field(
        default_factory=lambda: int(time.time() * 1000), description="Epoch milliseconds"
    )
    type: int = Field(..., description="Event type code")
    properties: Dict[str, str] = Field(default_factory=dict, description="Event properties")

    def with_target(self, target_id: str) -> "LogRecord":
        """Copy of this record attributed to target_id."""
        return self.model_copy(update={"target_id": target_id})

    def to_representation(self) -> str:
        parts = [encode(self.target_id), str(self.store_id), str(self.id), str(self.time), str(self.type)]
        for key, value in self.properties.items():
            parts.append(encode(key))
            parts.append(encode(value))
        return ",".join(parts)

    @classmethod
    def from_representation(cls, representation: str) -> "LogRecord":
        """Parse a representation produced by :meth:`to_representation`.

        Raises:
            ValueError: If the representation is malformed
        """
        tokens = representation.rstrip("\r\n").split(",")
        if len(tokens) < 5 or (len(tokens) - 5) % 2:
            raise ValueError(f"Could not create event from: {representation!r}")
        try:
            properties = {
                decode(tokens[i]): decode(tokens[i + 1]) for i in range(5, len(tokens), 2)
            }
            return cls(
                target_id=decode(tokens[0]),
                store_id=int(tokens[1]),
                id=int(tokens[2]),
                time=int(tokens[3]),
                type=int(tokens[4]),
                properties=properties,
            )
        except ValueError as e:
            raise ValueError(f"Could not create event from: {representation!r}") from e


class LogDescriptor(BaseModel):
    """Server side view of one store: which ids it already holds."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    target_id: str
    store_id: int
    ranges: SortedRangeSet = Field(default_factory=SortedRangeSet)

    def to_representation(self) -> str:
        base = f"{encode(self.target_id)},{self.store_id}"
        ranges = self.ranges.to_representation()
        return f"{base},{ranges}" if ranges else base

    @classmethod
    def from_representation(cls, representation: Optional[str]) -> "LogDescriptor":
        """Parse ``target,store[,range-string]``.

        Raises:
            ValueError: If the descriptor is empty or malformed
        """
        if not representation or not representation.strip():
            raise ValueError("Empty log descriptor")
        tokens = representation.strip().split(",", 2)
        if len(tokens) < 2:
            raise ValueError(f"Malformed log descriptor: {representation!r}")
        try:
            return cls(
                target_id=decode(tokens[0]),
                store_id=int(tokens[1]),
                ranges=SortedRangeSet(tokens[2] if len(tokens) == 3 else ""),
            )
        except ValueError as e:
            raise ValueError(f"Malformed log descriptor: {representation!r}") from e
