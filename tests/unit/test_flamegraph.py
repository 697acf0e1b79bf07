"""
CTFQ Test Suite - Flamegraph Tests
==================================
Tests for building nested frames from call records.
"""

from ctfq.tracelake.flamegraph import FrameNaming, ROOT_FRAME_NAME, build_flamegraph
from ctfq.tracelake.matcher import CallRecord, DiagnosticKind


def record(start, end, name="func", label=0xF, track=1, exit_name=None):
    return CallRecord(entry_name=name, exit_name=exit_name or name, track=track, label=label,
                      start_ts=start, end_ts=end)


class TestBuildFlamegraph:
    """Tests for build_flamegraph."""

    def test_nested(self):
        """A [0, 3] call enclosing [1, 2]: parent self value is 2."""
        result = build_flamegraph([record(1, 2), record(0, 3)])

        root = result.root
        assert root.name == ROOT_FRAME_NAME
        assert root.value == 0
        assert len(root.children) == 1

        parent = root.children[0]
        assert parent.value == 3
        assert [c.value for c in parent.children] == [1]
        assert parent.self_value == 2
        assert result.diagnostics == []

    def test_siblings_and_depth(self):
        records = [record(0, 10), record(1, 4), record(2, 3), record(5, 9)]

        root = build_flamegraph(records).root

        top = root.children[0]
        assert [c.value for c in top.children] == [3, 4]
        assert [c.value for c in top.children[0].children] == [1]
        assert len(list(root.walk())) == 5

    def test_equal_start_longer_first(self):
        root = build_flamegraph([record(0, 2), record(0, 8)]).root

        assert [c.value for c in root.children] == [8]
        assert [c.value for c in root.children[0].children] == [2]

    def test_adjacent_calls_are_siblings(self):
        root = build_flamegraph([record(0, 5), record(5, 9)]).root

        assert [c.value for c in root.children] == [5, 4]

    def test_containment_violation(self):
        """A child overrunning its parent is kept, flagged and clamped."""
        result = build_flamegraph([record(0, 5, label=1), record(2, 8, label=2)])

        parent = result.root.children[0]
        assert [c.value for c in parent.children] == [6]
        assert parent.self_value == 0
        assert [d.kind for d in result.diagnostics] == [DiagnosticKind.CONTAINMENT_VIOLATION]

    def test_tracks_are_nested_separately(self):
        records = [record(0, 10, track=1), record(2, 4, track=2)]

        root = build_flamegraph(records).root

        assert [c.value for c in root.children] == [10, 2]
        assert all(not c.children for c in root.children)

    def test_track_frames(self):
        records = [record(0, 10, track=1), record(12, 15, track=1), record(2, 4, track=2)]

        root = build_flamegraph(records, track_frames=True).root

        assert [(c.name, c.value) for c in root.children] == [("1", 13), ("2", 2)]
        assert root.value == 0

    def test_frame_naming(self):
        by_callsite = build_flamegraph([record(0, 1, name="enter", exit_name="leave")])
        by_label = build_flamegraph([record(0, 1, label=0x40)], naming=FrameNaming.LABEL)

        assert by_callsite.root.children[0].name == "enter -> leave"
        assert by_label.root.children[0].name == "64"

    def test_empty(self):
        result = build_flamegraph([])

        assert result.is_empty
        assert result.to_dict() == {"name": "root", "value": 0, "children": []}

    def test_to_dict(self):
        result = build_flamegraph([record(1, 2), record(0, 3)])

        assert result.to_dict() == {
            "name": "root",
            "value": 0,
            "children": [
                {"name": "func", "value": 3, "children": [
                    {"name": "func", "value": 1, "children": []},
                ]},
            ],
        }
        extended = result.root.children[0].to_dict(extended=True)
        assert extended["self"] == 2
        assert extended["start"] == 0
