"""
CTFQ Test Suite - Stats Aggregator Tests
========================================
Tests for per-callsite duration statistics.
"""

import pytest

from ctfq.tracelake.matcher import CallRecord
from ctfq.tracelake.stats import STATS_HEADERS, StatsGrouping, aggregate


def record(name, start, end, label=0x1, track=1):
    return CallRecord(entry_name=name, exit_name=name, track=track, label=label,
                      start_ts=start, end_ts=end)


class TestAggregate:
    """Tests for aggregate."""

    def test_sorted_by_total_with_lexical_ties(self):
        """Totals [5, 12, 12, 1] for A, B, C, D come out as B, C, A, D."""
        records = [
            record("D", 0, 1),
            record("C", 0, 12),
            record("A", 0, 2),
            record("B", 20, 32),
            record("A", 40, 43),
        ]

        table = aggregate(records)

        assert table.column("entry") == ["B", "C", "A", "D"]
        assert table.column("total") == [12, 12, 5, 1]

    def test_row_values(self):
        records = [record("f", 0, 2), record("f", 10, 13), record("g", 0, 7)]

        table = aggregate(records)
        by_name = {row.name: row for row in table.rows}

        f = by_name["f -> f"]
        assert (f.count, f.total, f.min, f.max) == (2, 5, 2, 3)
        assert f.mean == pytest.approx(2.5)
        assert by_name["g -> g"].count == 1

    def test_invariants(self):
        records = [record("f", i, i + d) for i, d in enumerate([4, 1, 9, 3])]

        row = aggregate(records).rows[0]

        assert row.min <= row.mean <= row.max
        assert row.total == pytest.approx(row.mean * row.count)

    def test_distinct_exit_names_form_distinct_groups(self):
        records = [
            CallRecord("enter", "leave", 1, 1, 0, 4),
            CallRecord("enter", "abort", 1, 1, 10, 11),
        ]

        table = aggregate(records)

        assert [row.name for row in table.rows] == ["enter -> leave", "enter -> abort"]

    def test_group_by_label(self):
        records = [record("f", 0, 2, label=1), record("f", 0, 5, label=2), record("f", 5, 6, label=1)]

        table = aggregate(records, group_by=StatsGrouping.LABEL)

        assert [(row.name, row.total) for row in table.rows] == [("2", 5), ("1", 3)]

    def test_callsite_grouping_ignores_labels(self):
        """Labels are neither rendered nor compared when grouping by call site."""
        class UnrenderableLabel:
            def __str__(self):
                raise AssertionError("label rendered")

        records = [record("f", 0, 2, label=UnrenderableLabel()), record("f", 0, 5, label=7)]

        table = aggregate(records)

        assert [(row.name, row.count, row.total) for row in table.rows] == [("f -> f", 2, 7)]

    def test_empty(self):
        table = aggregate([])

        assert table.is_empty
        assert table.to_dict() == {"hdrs": STATS_HEADERS, "rows": []}


class TestStatsTable:
    """Tests for table serialization."""

    def test_to_dict(self):
        table = aggregate([record("f", 0, 4)])

        assert table.to_dict() == {
            "hdrs": ["name", "entry", "exit", "count", "total", "mean", "min", "max"],
            "rows": [["f -> f", "f", "f", 1, 4, 4.0, 4, 4]],
        }

    def test_to_dataframe(self):
        frame = aggregate([record("f", 0, 4), record("g", 0, 1)]).to_dataframe()

        assert list(frame.columns) == STATS_HEADERS
        assert list(frame["name"]) == ["f -> f", "g -> g"]
