"""
Unit tests for freshness module.
"""

import pytest

from mv_rewrite.errors import CatalogConsistencyError
from mv_rewrite.freshness import check_freshness
from mv_rewrite.plan_nodes import Scan


@pytest.fixture
def mv(catalog):
    """MV over both partitions of T, captured at version 1."""
    return catalog.register_view("mv1", "SELECT deptno, SUM(salary) FROM t GROUP BY deptno")


@pytest.fixture
def query_node(build):
    return build("SELECT deptno, SUM(salary) FROM t GROUP BY deptno")


class TestStrictFreshness:
    """Tests for the default zero tolerance."""

    def test_fresh(self, catalog, versions, mv, query_node):
        verdict = check_freshness(query_node, mv, catalog.snapshot(), versions)

        assert verdict.fresh
        assert verdict.max_lag == 0
        assert verdict.partitions_checked == 2

    def test_stale_after_mutation(self, catalog, versions, mv, query_node):
        """Test one committed mutation makes the MV stale."""
        versions.bump("t.p2")
        verdict = check_freshness(query_node, mv, catalog.snapshot(), versions)

        assert not verdict.fresh
        assert verdict.max_lag == 1
        assert "t.p2" in verdict.reason
        assert "captured 1, current 2" in verdict.reason

    def test_fresh_again_after_refresh(self, catalog, versions, mv, query_node):
        versions.bump("t.p1")
        refreshed = catalog.refresh_view("mv1")
        assert check_freshness(query_node, refreshed, catalog.snapshot(), versions).fresh

    def test_unread_partition_ignored(self, catalog, versions, mv):
        """Test only partitions the sub-tree reads are checked."""
        versions.bump("t.p2")
        pruned = Scan(table="t", alias="t", columns=("deptno",), partitions=("p1",))
        verdict = check_freshness(pruned, mv, catalog.snapshot(), versions)

        assert verdict.fresh
        assert verdict.partitions_checked == 1


class TestTolerance:
    """Tests for a non-zero staleness tolerance."""

    def test_within_tolerance(self, catalog, versions, mv, query_node):
        versions.bump("t.p1", by=2)
        verdict = check_freshness(query_node, mv, catalog.snapshot(), versions, tolerance=2)

        assert verdict.fresh
        assert verdict.max_lag == 2

    def test_beyond_tolerance(self, catalog, versions, mv, query_node):
        versions.bump("t.p1", by=3)
        verdict = check_freshness(query_node, mv, catalog.snapshot(), versions, tolerance=2)

        assert not verdict.fresh
        assert "tolerance 2" in verdict.reason

    def test_monotone_in_versions(self, catalog, versions, mv, query_node):
        """Test once stale, further mutations never make the MV fresh."""
        results = []
        for _ in range(4):
            versions.bump("t.p1")
            results.append(check_freshness(query_node, mv, catalog.snapshot(), versions, tolerance=1).fresh)
        assert results == [True, False, False, False]

    def test_negative_tolerance(self, catalog, versions, mv, query_node):
        with pytest.raises(ValueError):
            check_freshness(query_node, mv, catalog.snapshot(), versions, tolerance=-1)


class TestCoverage:
    """Tests for partitions the MV does not cover and broken invariants."""

    def test_partition_not_captured(self, catalog, versions, query_node):
        mv = catalog.register_view(
            "mv_partial",
            "SELECT deptno, SUM(salary) FROM t GROUP BY deptno",
            captured_versions={"t.p1": 1},
        )
        verdict = check_freshness(query_node, mv, catalog.snapshot(), versions)

        assert not verdict.fresh
        assert "t.p2" in verdict.reason
        assert "not covered" in verdict.reason

    def test_version_went_backwards(self, catalog, versions, query_node):
        mv = catalog.register_view(
            "mv_future",
            "SELECT deptno, SUM(salary) FROM t GROUP BY deptno",
            captured_versions={"t.p1": 5, "t.p2": 1},
        )
        with pytest.raises(CatalogConsistencyError):
            check_freshness(query_node, mv, catalog.snapshot(), versions)

    def test_partition_missing_from_catalog(self, catalog, versions, mv):
        scan = Scan(table="t", alias="t", columns=("deptno",), partitions=("p9",))
        with pytest.raises(CatalogConsistencyError):
            check_freshness(scan, mv, catalog.snapshot(), versions)
