"""Version model with a total order (major.minor.micro[.qualifier])."""

import re
from functools import total_ordering
from typing import Iterable, Optional

_QUALIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]*$")


@total_ordering
class Version:
    """Three component version plus an optional qualifier.

    Ordering compares major, minor and micro numerically and the qualifier
    lexically; a missing qualifier sorts before any qualifier.
    """

    __slots__ = ("major", "minor", "micro", "qualifier")

    def __init__(self, major: int = 0, minor: int = 0, micro: int = 0, qualifier: str = ""):
        if major < 0 or minor < 0 or micro < 0:
            raise ValueError(f"Negative version component: {major}.{minor}.{micro}")
        if not _QUALIFIER_PATTERN.match(qualifier):
            raise ValueError(f"Invalid version qualifier: {qualifier!r}")
        self.major = major
        self.minor = minor
        self.micro = micro
        self.qualifier = qualifier

    @classmethod
    def parse(cls, value: Optional[str]) -> "Version":
        """Parse a version string such as ``1``, ``1.2``, ``1.2.3`` or ``1.2.3.beta``.

        Raises:
            ValueError: If the string is not a valid version
        """
        if value is None:
            return EMPTY_VERSION
        text = value.strip()
        if not text:
            return EMPTY_VERSION

        parts = text.split(".", 3)
        try:
            numbers = [int(part) for part in parts[:3]]
        except ValueError:
            raise ValueError(f"Invalid version: {value!r}") from None
        if any(not part.isdigit() for part in parts[:3]):
            raise ValueError(f"Invalid version: {value!r}")

        while len(numbers) < 3:
            numbers.append(0)
        qualifier = parts[3] if len(parts) == 4 else ""
        if len(parts) == 4 and not qualifier:
            raise ValueError(f"Invalid version: {value!r}")
        return cls(numbers[0], numbers[1], numbers[2], qualifier)

    def _key(self):
        return (self.major, self.minor, self.micro, self.qualifier)

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __hash__(self):
        return hash(self._key())

    def __str__(self):
        base = f"{self.major}.{self.minor}.{self.micro}"
        return f"{base}.{self.qualifier}" if self.qualifier else base

    def __repr__(self):
        return f"Version('{self}')"


EMPTY_VERSION = Version(0, 0, 0)


def highest_version(versions: Iterable[Version]) -> Version:
    """Return the highest version, or EMPTY_VERSION for an empty iterable."""
    return max(versions, default=EMPTY_VERSION)
