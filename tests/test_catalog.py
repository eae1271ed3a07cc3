"""
Unit tests for catalog module.
"""

import json

import pytest

from mv_rewrite.catalog import (
    MvCatalog,
    Partition,
    load_catalog,
    make_table,
    make_view,
    mv_output_name,
)
from mv_rewrite.errors import CatalogConsistencyError, PlanBuildError
from mv_rewrite.plan_nodes import ColumnRef, Scan


class TestTables:
    """Tests for BaseTable and Partition."""

    def test_make_table_lowercases(self):
        table = make_table("T", ["Deptno", "SALARY"], ["P1"])
        assert table.name == "t"
        assert table.columns == ("deptno", "salary")
        assert table.partitions == (Partition("t", "P1"),)

    def test_default_partition(self):
        table = make_table("depts", ["deptno"])
        assert [p.partition_id for p in table.partitions] == ["depts.default"]

    def test_partition_lookup(self, t_table):
        assert t_table.partition("p2") == Partition("t", "p2")
        assert t_table.partition("p9") is None


class TestViews:
    """Tests for MaterializedView construction."""

    def test_output_names(self, build):
        """Test MV columns are derived from the definition outputs."""
        definition = build("SELECT deptno, SUM(salary) FROM t GROUP BY deptno")
        mv = make_view("MV1", definition, {"t.p1": 1})

        assert mv.name == "mv1"
        assert mv.column_names == ("deptno", "sum_salary")
        assert mv.output[0].expr == ColumnRef("", "deptno")
        assert mv.is_aggregate
        assert [ne.name for ne in mv.group_keys] == ["deptno"]

    def test_scan_output_names_are_qualified(self):
        scan = Scan(table="t", alias="e", columns=("deptno",))
        mv = make_view("mv_scan", scan, {})
        assert mv.column_names == (mv_output_name("e", "deptno"),)
        assert mv.column_names == ("e__deptno",)
        assert not mv.is_aggregate
        assert mv.aggregates == ()

    def test_captured_versions_read_only(self, build):
        mv = make_view("mv1", build("SELECT empid FROM t"), {"t.p1": 1})
        with pytest.raises(TypeError):
            mv.captured_versions["t.p1"] = 5


class TestSnapshot:
    """Tests for MvCatalogSnapshot."""

    def test_partitions_read_whole_table(self, catalog, build):
        snapshot = catalog.snapshot()
        plan = build("SELECT e.empid FROM t e JOIN depts d ON e.deptno = d.deptno")

        ids = [p.partition_id for p in snapshot.partitions_read(plan)]
        assert ids == ["depts.default", "t.p1", "t.p2"]

    def test_partitions_read_pruned(self, catalog):
        scan = Scan(table="t", alias="t", columns=("empid",), partitions=("p2",))
        assert catalog.snapshot().partitions_read(scan) == [Partition("t", "p2")]

    def test_unknown_partition(self, catalog):
        scan = Scan(table="t", alias="t", columns=("empid",), partitions=("p7",))
        with pytest.raises(CatalogConsistencyError):
            catalog.snapshot().partitions_read(scan)

    def test_unknown_table(self, catalog):
        with pytest.raises(CatalogConsistencyError):
            catalog.snapshot().table("nope")


class TestMvCatalog:
    """Tests for MvCatalog publishing."""

    def test_register_view_captures_versions(self, catalog, versions):
        """Test registration records the current version of every partition read."""
        versions.bump("t.p2")
        mv = catalog.register_view("mv1", "SELECT deptno, SUM(salary) FROM t GROUP BY deptno")

        assert dict(mv.captured_versions) == {"t.p1": 1, "t.p2": 2}
        assert mv.sql.startswith("SELECT")
        assert catalog.snapshot().views["mv1"] is mv

    def test_explicit_captured_versions(self, catalog):
        mv = catalog.register_view("mv1", "SELECT empid FROM t", captured_versions={"t.p1": 7})
        assert dict(mv.captured_versions) == {"t.p1": 7}

    def test_snapshots_are_immutable(self, catalog):
        """Test an old snapshot is unaffected by later mutations."""
        before = catalog.snapshot()
        catalog.register_view("mv1", "SELECT empid FROM t")
        after = catalog.snapshot()

        assert "mv1" not in before.views
        assert "mv1" in after.views
        assert after.version == before.version + 1

    def test_refresh_view(self, catalog, versions):
        catalog.register_view("mv1", "SELECT empid FROM t")
        versions.bump("t.p1")
        refreshed = catalog.refresh_view("mv1")

        assert refreshed.captured_versions["t.p1"] == 2
        assert catalog.snapshot().views["mv1"].captured_versions["t.p1"] == 2

    def test_drop_view(self, catalog):
        catalog.register_view("mv1", "SELECT empid FROM t")
        catalog.drop_view("mv1")
        assert catalog.snapshot().view_names == []
        with pytest.raises(KeyError):
            catalog.drop_view("mv1")

    def test_view_names_sorted(self, catalog):
        catalog.register_view("mv_b", "SELECT empid FROM t")
        catalog.register_view("mv_a", "SELECT deptno FROM depts")
        assert catalog.snapshot().view_names == ["mv_a", "mv_b"]

    def test_bad_definition(self, catalog):
        with pytest.raises(PlanBuildError):
            catalog.register_view("mv1", "SELECT empid FROM missing")

    def test_unknown_partition_in_oracle(self, versions):
        catalog = MvCatalog(versions)
        catalog.register_table(make_table("other", ["a"]))
        with pytest.raises(CatalogConsistencyError):
            catalog.register_view("mv1", "SELECT a FROM other")


class TestLoadCatalog:
    """Tests for load_catalog."""

    def _write(self, tmp_path, content):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(content), encoding="utf-8")
        return path

    def test_load(self, tmp_path):
        path = self._write(tmp_path, {
            "tables": {
                "t": {"columns": ["deptno", "salary"], "partitions": {"p1": 3, "p2": 1}},
                "depts": {"columns": {"deptno": "int", "dname": "string"}},
            },
            "views": {
                "mv1": {"sql": "SELECT deptno, SUM(salary) FROM t GROUP BY deptno"},
                "mv2": {"sql": "SELECT deptno FROM depts", "captured_versions": {"depts.default": 0}},
            },
            "row_counts": {"t": 1000, "mv1": 10},
        })
        loaded = load_catalog(path)
        snapshot = loaded.catalog.snapshot()

        assert loaded.warnings == []
        assert snapshot.view_names == ["mv1", "mv2"]
        assert snapshot.tables["depts"].columns == ("deptno", "dname")
        assert dict(snapshot.views["mv1"].captured_versions) == {"t.p1": 3, "t.p2": 1}
        assert dict(snapshot.views["mv2"].captured_versions) == {"depts.default": 0}
        assert loaded.versions.to_dict() == {"t.p1": 3, "t.p2": 1, "depts.default": 1}
        assert loaded.statistics.row_counts["mv1"] == 10.0

    def test_bad_view_is_skipped(self, tmp_path):
        path = self._write(tmp_path, {
            "tables": {"t": {"columns": ["a"]}},
            "views": {"bad": {"sql": "SELECT nope FROM t"}, "good": {"sql": "SELECT a FROM t"}},
        })
        loaded = load_catalog(path)

        assert loaded.catalog.snapshot().view_names == ["good"]
        assert len(loaded.warnings) == 1
        assert "bad" in loaded.warnings[0]

    @pytest.mark.parametrize(
        "content",
        [
            [],
            {"tables": {"t": "not an object"}},
            {"tables": {"t": {"columns": []}}},
            {"tables": {"t": {"columns": ["a"], "partitions": 3}}},
            {"tables": {"t": {"columns": ["a"]}}, "views": {"v": {}}},
        ],
    )
    def test_malformed(self, tmp_path, content):
        with pytest.raises(ValueError):
            load_catalog(self._write(tmp_path, content))
