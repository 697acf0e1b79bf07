"""
CTFQ Integration Tests
End-to-end queries over multi-stream CTF2 traces.
"""

import json

import pytest

import ctfq
from ctfq.tracelake.flamegraph import FrameNaming

FUNC_ARGS = (
    "func_entry", "exact", "func_exit", "exact",
    "/common-context/tid", "/common-context/tid", "/payload/addr", "/payload/addr",
)


@pytest.mark.integration
class TestEndToEnd:
    """Queries through the public API."""

    def test_all_queries(self, multi_thread_trace):
        info = ctfq.get_trace_info(multi_thread_trace)
        counts = ctfq.get_event_type_counts(multi_thread_trace)
        stats = ctfq.get_callstack_stats(multi_thread_trace, *FUNC_ARGS)
        flame = ctfq.get_flamegraph(multi_thread_trace, *FUNC_ARGS)

        assert all(q.ok for q in (info, counts, stats, flame))
        assert info.result["trace-info"]["data-streams"] == ["stream_0", "stream_1"]
        assert {c["event_name"]: c["count"] for c in counts.result} == {"func_entry": 3, "func_exit": 3}

        # tid 1: [100, 400] enclosing [150, 200]; tid 2: [120, 300]
        row = stats.result["rows"][0]
        assert row[3:] == [3, 300 + 50 + 180, pytest.approx(530 / 3), 50, 300]

        children = flame.result["children"]
        assert sorted(c["value"] for c in children) == [180, 300]
        tid1 = next(c for c in children if c["value"] == 300)
        assert [c["value"] for c in tid1["children"]] == [50]

    def test_track_frames(self, multi_thread_trace):
        outcome = ctfq.get_flamegraph(multi_thread_trace, *FUNC_ARGS, naming=FrameNaming.LABEL,
                                      track_frames=True)

        assert [(c["name"], c["value"]) for c in outcome.result["children"]] == [("1", 300), ("2", 180)]
        assert outcome.result["children"][0]["children"][0]["name"] == str(0x10)

    def test_time_window(self, multi_thread_trace):
        outcome = ctfq.get_callstack_stats(multi_thread_trace, *FUNC_ARGS, begin_ns=140, end_ns=350)

        assert outcome.ok
        assert [row[3] for row in outcome.result["rows"]] == [1]
        assert outcome.summary["orphan_exits"] == 1

    def test_failure_is_distinguishable_from_empty(self, multi_thread_trace, temp_dir):
        empty = ctfq.get_callstack_stats(multi_thread_trace, "no_such_event", "exact", "no_such_exit",
                                         "exact", *FUNC_ARGS[4:])
        failed = ctfq.get_callstack_stats(temp_dir / "absent", *FUNC_ARGS)

        assert empty.rc == 0 and empty.result["rows"] == []
        assert failed.rc != 0 and failed.reason == "io-failure"

    def test_reload_after_new_trace(self, trace_builder):
        engine = ctfq.TraceQueryEngine()
        builder = trace_builder()
        builder.call("f", 0, 10, addr=1)
        path = builder.write()

        before = engine.get_event_type_counts(path)
        builder.call("f", 20, 30, addr=1)
        builder.write()
        cached = engine.get_event_type_counts(path)
        engine.cache.get(path, reload=True)
        after = engine.get_event_type_counts(path)

        assert before.result == cached.result
        assert {c["count"] for c in after.result} == {2}


@pytest.mark.integration
class TestCLIEndToEnd:
    """Full CLI runs."""

    def test_stats_then_flamegraph(self, cli_runner, multi_thread_trace, temp_dir):
        from ctfq.cli import cli
        output = temp_dir / "flame.json"

        stats = cli_runner.invoke(cli, ["stats", str(multi_thread_trace), "--by-label", "--json"])
        flame = cli_runner.invoke(cli, ["flamegraph", str(multi_thread_trace), "--by-track",
                                        "-o", str(output)])

        assert stats.exit_code == 0
        assert [row[0] for row in json.loads(stats.stdout)["rows"]] == [str(0x10), str(0x20)]
        assert flame.exit_code == 0
        assert "Flamegraph saved" in flame.output
        assert [c["name"] for c in json.loads(output.read_text())["children"]] == ["1", "2"]
