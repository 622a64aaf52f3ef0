"""Unit tests for SortedRangeSet."""

import pytest

from fieldagent.models.range_set import SortedRangeSet


@pytest.mark.unit
class TestSortedRangeSet:
    """Test range parsing, merging and difference."""

    def test_parse_and_merge_adjacent_ranges(self):
        ranges = SortedRangeSet("5-7,1-3,4,10")

        assert ranges.to_representation() == "1-7,10"
        assert ranges.low == 1
        assert ranges.high == 10
        assert len(ranges) == 8

    def test_empty_set(self):
        ranges = SortedRangeSet("")

        assert not ranges
        assert ranges.low == 0
        assert ranges.high == 0
        assert list(ranges) == []

    @pytest.mark.parametrize("representation", ["a", "3-1", "1-", "-4", "1-2-3"])
    def test_invalid_representation_raises(self, representation):
        with pytest.raises(ValueError):
            SortedRangeSet(representation)

    def test_from_ids_collapses_runs(self):
        ranges = SortedRangeSet.from_ids([9, 1, 2, 3, 7, 8, 2])

        assert ranges.ranges() == [(1, 3), (7, 9)]

    def test_from_bounds_empty_when_reversed(self):
        assert not SortedRangeSet.from_bounds(5, 4)
        assert list(SortedRangeSet.from_bounds(2, 4)) == [2, 3, 4]

    def test_contains(self):
        ranges = SortedRangeSet("1-3,8")

        assert 2 in ranges
        assert 8 in ranges
        assert 5 not in ranges
        assert 9 not in ranges

    def test_diff_dest_returns_ids_missing_remotely(self):
        remote = SortedRangeSet("1-30,40-45")
        local = SortedRangeSet.from_bounds(1, 50)

        missing = remote.diff_dest(local)

        assert missing.to_representation() == "31-39,46-50"
        assert missing.low == 31
        assert missing.high == 50

    def test_diff_dest_with_empty_remote(self):
        missing = SortedRangeSet("").diff_dest(SortedRangeSet.from_bounds(1, 3))

        assert list(missing) == [1, 2, 3]

    def test_diff_dest_when_remote_has_everything(self):
        missing = SortedRangeSet("1-100").diff_dest(SortedRangeSet.from_bounds(1, 50))

        assert not missing

    def test_union(self):
        union = SortedRangeSet("1-3").union(SortedRangeSet("4-6,10"))

        assert union == SortedRangeSet("1-6,10")

    def test_iteration_order(self):
        ranges = SortedRangeSet("3-4,1")

        assert list(ranges) == [1, 3, 4]
        assert list(reversed(ranges)) == [4, 3, 1]
