"""Compact sorted set of positive ids, written as ranges ("1-5,9,20-30")."""

from typing import Iterable, Iterator, List, Tuple


def _parse_range(token: str) -> Tuple[int, int]:
    text = token.strip()
    low_text, sep, high_text = text.partition("-")
    if not low_text.isdigit() or (sep and not high_text.isdigit()):
        raise ValueError(f"Invalid range: {token!r}")
    low = int(low_text)
    high = int(high_text) if sep else low
    if high < low:
        raise ValueError(f"Invalid range, high < low: {token!r}")
    return low, high


class SortedRangeSet:
    """Ordered set of ids stored as merged, non-overlapping inclusive ranges."""

    def __init__(self, representation: str = ""):
        self._ranges: List[List[int]] = []
        for token in representation.split(","):
            if token.strip():
                low, high = _parse_range(token)
                self._add_range(low, high)

    @classmethod
    def from_ids(cls, ids: Iterable[int]) -> "SortedRangeSet":
        result = cls()
        for number in sorted(set(ids)):
            result._add_range(number, number)
        return result

    @classmethod
    def from_bounds(cls, low: int, high: int) -> "SortedRangeSet":
        """Range set holding every id in [low, high]; empty when high < low."""
        result = cls()
        if high >= low:
            result._add_range(low, high)
        return result

    def _add_range(self, low: int, high: int) -> None:
        merged: List[List[int]] = []
        placed = False
        for current in self._ranges:
            if current[1] + 1 < low:
                merged.append(current)
            elif high + 1 < current[0]:
                if not placed:
                    merged.append([low, high])
                    placed = True
                merged.append(current)
            else:
                low = min(low, current[0])
                high = max(high, current[1])
        if not placed:
            merged.append([low, high])
        merged.sort()
        self._ranges = merged

    def to_representation(self) -> str:
        return ",".join(
            str(low) if low == high else f"{low}-{high}" for low, high in self._ranges
        )

    def contains(self, number: int) -> bool:
        for low, high in self._ranges:
            if low <= number <= high:
                return True
            if number < low:
                return False
        return False

    __contains__ = contains

    def diff_dest(self, dest: "SortedRangeSet") -> "SortedRangeSet":
        """Return ``dest \\ self``: the ids of dest that this set lacks."""
        result = SortedRangeSet()
        for low, high in dest._ranges:
            cursor = low
            for other_low, other_high in self._ranges:
                if other_high < cursor:
                    continue
                if other_low > high:
                    break
                if other_low > cursor:
                    result._add_range(cursor, other_low - 1)
                cursor = max(cursor, other_high + 1)
                if cursor > high:
                    break
            if cursor <= high:
                result._add_range(cursor, high)
        return result

    def union(self, other: "SortedRangeSet") -> "SortedRangeSet":
        result = SortedRangeSet()
        for low, high in self._ranges + other._ranges:
            result._add_range(low, high)
        return result

    @property
    def high(self) -> int:
        """Highest id in the set, or 0 when empty."""
        return self._ranges[-1][1] if self._ranges else 0

    @property
    def low(self) -> int:
        """Lowest id in the set, or 0 when empty."""
        return self._ranges[0][0] if self._ranges else 0

    def ranges(self) -> List[Tuple[int, int]]:
        return [(low, high) for low, high in self._ranges]

    def __iter__(self) -> Iterator[int]:
        for low, high in self._ranges:
            yield from range(low, high + 1)

    def __reversed__(self) -> Iterator[int]:
        for low, high in reversed(self._ranges):
            yield from range(high, low - 1, -1)

    def __len__(self) -> int:
        return sum(high - low + 1 for low, high in self._ranges)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __eq__(self, other):
        if not isinstance(other, SortedRangeSet):
            return NotImplemented
        return self._ranges == other._ranges

    def __repr__(self) -> str:
        return f"SortedRangeSet[{self.to_representation()}]"
