"""
Unit tests for trace module.
"""

import json

import pytest

from mv_rewrite.pipeline import RewriteConfig, rewrite
from mv_rewrite.trace import (
    RejectionReason,
    RejectionStage,
    StageVerdict,
    TraceEntry,
    format_explain,
    write_trace,
)


QUERY = "SELECT deptno, SUM(salary) FROM t GROUP BY deptno"


@pytest.fixture
def result(catalog, statistics, versions, build):
    """Rewrite using mv_good, with mv_bad rejected structurally."""
    catalog.register_view("mv_good", "SELECT deptno, commission, SUM(salary) FROM t GROUP BY deptno, commission")
    catalog.register_view("mv_bad", "SELECT deptno FROM depts")
    return rewrite(build(QUERY), catalog.snapshot(), RewriteConfig(), statistics, versions)


class TestTraceObjects:
    """Tests for trace data classes."""

    def test_rejection_str(self):
        reason = RejectionReason("mv1", RejectionStage.FRESHNESS, "partition t.p1 is stale")
        assert str(reason) == "mv1 [freshness] partition t.p1 is stale"

    def test_entry_defaults(self):
        entry = TraceEntry(mv_name="mv1")
        data = entry.to_dict()

        assert data["structural"] == "not reached"
        assert data["path"] is None
        assert data["chosen"] is False

    def test_trace_entries(self, result):
        trace = result.trace

        assert trace.chosen == "mv_good"
        assert [e.mv_name for e in trace.entries] == ["mv_bad", "mv_good"]
        good = trace.entry("mv_good")
        assert good.structural == StageVerdict.PASS
        assert good.aggregate == StageVerdict.PASS
        assert good.freshness == StageVerdict.PASS
        assert good.path == ()
        assert good.cost is not None
        assert trace.entry("mv_bad").structural == StageVerdict.FAIL
        assert trace.entry("missing") is None


class TestExplain:
    """Tests for format_explain."""

    def test_rewritten(self, result):
        text = format_explain(result)
        lines = text.splitlines()

        assert lines[0].startswith("REWRITTEN using mv_good")
        assert "Rejections:" in lines
        assert any(line.startswith("  - mv_bad [structural]") for line in lines)
        assert "Scan mv_good AS mv_good (partitions: all)" in text

    def test_unchanged(self, catalog, statistics, versions, build):
        result = rewrite(build(QUERY), catalog.snapshot(), RewriteConfig(), statistics, versions)
        text = format_explain(result)

        assert text.startswith("UNCHANGED")
        assert "Scan t AS t" in text


class TestWriteTrace:
    """Tests for write_trace."""

    def test_writes_json(self, tmp_path, result):
        out_path = write_trace(tmp_path / "out", result, sql=QUERY)

        assert out_path == tmp_path / "out" / "rewrite_trace.json"
        data = json.loads(out_path.read_text(encoding="utf-8"))
        assert data["rewritten"] is True
        assert data["mv_name"] == "mv_good"
        assert data["sql"] == QUERY
        assert data["rejections"][0]["stage"] == "structural"
        assert data["trace"]["chosen"] == "mv_good"
        assert {e["mv_name"] for e in data["trace"]["entries"]} == {"mv_bad", "mv_good"}
