"""
Unit tests for matcher module.
"""

import pytest

from mv_rewrite.canonicalizer import canonicalize
from mv_rewrite.matcher import match_view
from mv_rewrite.plan_nodes import BinaryOp, ColumnRef, Literal, column_refs


@pytest.fixture
def match(catalog, build):
    """match(mv_sql, query_sql) -> MatchOutcome"""

    def _match(mv_sql: str, query_sql: str):
        mv = catalog.register_view("mv", mv_sql)
        return match_view(canonicalize(build(query_sql)), mv)

    return _match


class TestSpjMatch:
    """Tests for select-project-join MVs."""

    def test_identical_query(self, match):
        """Test a query equal to the definition matches at the root."""
        outcome = match("SELECT empid, deptno FROM t", "SELECT empid, deptno FROM t")

        assert len(outcome.matches) == 1
        found = outcome.matches[0]
        assert found.path == ()
        assert found.residual_predicates == ()
        assert [ne.expr for ne in found.compensation.outputs] == [
            ColumnRef("mv", "empid"), ColumnRef("mv", "deptno"),
        ]
        assert found.compensation.residual is None

    def test_stronger_predicate_leaves_residual(self, match):
        """Test salary > 20 implies salary > 10 and is re-applied over the MV."""
        outcome = match(
            "SELECT empid, salary FROM t WHERE salary > 10",
            "SELECT empid FROM t WHERE salary > 20",
        )

        found = outcome.matches[0]
        assert found.residual_predicates == (BinaryOp(">", ColumnRef("t", "salary"), Literal(20)),)
        assert found.compensation.residual == BinaryOp(">", ColumnRef("mv", "salary"), Literal(20))
        assert [ne.name for ne in found.compensation.outputs] == ["empid"]

    def test_weaker_predicate_rejected(self, match):
        outcome = match(
            "SELECT empid, salary FROM t WHERE salary > 10",
            "SELECT empid FROM t WHERE salary > 5",
        )
        assert outcome.matches == []
        assert "does not imply" in outcome.reason

    def test_residual_on_missing_column_rejected(self, match):
        """Test a residual that needs a column the MV does not store."""
        outcome = match(
            "SELECT empid FROM t WHERE salary > 10",
            "SELECT empid FROM t WHERE salary > 20",
        )
        assert outcome.matches == []
        assert "residual predicate not expressible" in outcome.reason

    def test_output_not_stored_rejected(self, match):
        outcome = match("SELECT empid FROM t", "SELECT empid, name FROM t")
        assert outcome.matches == []
        assert "not expressible" in outcome.reason

    def test_computed_output_reused(self, match):
        """Test an MV expression column serves an equal query expression."""
        outcome = match(
            "SELECT empid, salary * 2 AS double_salary FROM t",
            "SELECT 2 * salary AS twice FROM t",
        )
        found = outcome.matches[0]
        assert found.compensation.outputs[0].name == "twice"
        assert found.compensation.outputs[0].expr == ColumnRef("mv", "double_salary")

    def test_column_equality_chain_keeps_residuals(self, match):
        """Test query equalities are re-applied unless the MV filter enforces them."""
        outcome = match(
            "SELECT empid, deptno, salary, commission FROM t WHERE deptno = commission",
            "SELECT empid FROM t WHERE deptno = salary AND salary = commission",
        )

        found = outcome.matches[0]
        assert len(found.residual_predicates) == 2
        kept = {frozenset(ref.column for ref in column_refs(c)) for c in found.residual_predicates}
        assert kept == {frozenset({"deptno", "salary"}), frozenset({"salary", "commission"})}
        assert found.compensation.residual is not None
        assert {ref.table for ref in column_refs(found.compensation.residual)} == {"mv"}

    def test_equality_enforced_by_mv_dropped(self, match):
        outcome = match(
            "SELECT empid, deptno, salary FROM t WHERE deptno = commission",
            "SELECT empid FROM t WHERE commission = deptno",
        )
        found = outcome.matches[0]
        assert found.residual_predicates == ()
        assert found.compensation.residual is None

    def test_table_mismatch(self, match):
        outcome = match("SELECT deptno FROM depts", "SELECT deptno FROM t")
        assert outcome.matches == []
        assert "table mismatch" in outcome.reason


class TestJoinMatch:
    """Tests for join MVs."""

    MV_SQL = "SELECT e.empid, e.deptno, d.dname FROM t e JOIN depts d ON e.deptno = d.deptno"

    def test_aliases_mapped_and_inputs_commuted(self, match):
        """Test other aliases and swapped join inputs still match."""
        outcome = match(self.MV_SQL, "SELECT a.empid, b.dname FROM depts b JOIN t a ON b.deptno = a.deptno")

        found = outcome.matches[0]
        assert found.alias_mapping == {"d": "b", "e": "a"}
        assert [ne.expr for ne in found.compensation.outputs] == [
            ColumnRef("mv", "empid"), ColumnRef("mv", "dname"),
        ]

    def test_extra_inner_condition_is_residual(self, match):
        outcome = match(
            self.MV_SQL,
            "SELECT e.empid FROM t e JOIN depts d ON e.deptno = d.deptno AND d.dname = 'x'",
        )
        found = outcome.matches[0]
        assert found.residual_predicates == (BinaryOp("=", ColumnRef("d", "dname"), Literal("x")),)
        assert found.compensation.residual == BinaryOp("=", ColumnRef("mv", "dname"), Literal("x"))

    def test_extra_column_equality_is_residual(self, match):
        outcome = match(
            "SELECT e.empid, e.salary, e.deptno, d.dname FROM t e JOIN depts d ON e.deptno = d.deptno",
            "SELECT e.empid FROM t e JOIN depts d ON e.deptno = d.deptno AND e.salary = d.deptno",
        )
        found = outcome.matches[0]
        assert len(found.residual_predicates) == 1
        assert {ref.column for ref in column_refs(found.residual_predicates[0])} == {"salary", "deptno"}

    def test_missing_join_rejected(self, match):
        outcome = match(self.MV_SQL, "SELECT e.empid FROM t e")
        assert outcome.matches == []

    def test_outer_join_conditions_must_be_equal(self, match):
        outcome = match(
            "SELECT e.empid, d.dname FROM t e LEFT JOIN depts d ON e.deptno = d.deptno",
            "SELECT e.empid FROM t e LEFT JOIN depts d ON e.deptno = d.deptno AND d.dname = 'x'",
        )
        assert outcome.matches == []
        assert "left join conditions differ" in outcome.reason

    def test_join_kind_mismatch(self, match):
        outcome = match(
            "SELECT e.empid, d.dname FROM t e LEFT JOIN depts d ON e.deptno = d.deptno",
            "SELECT e.empid, d.dname FROM t e JOIN depts d ON e.deptno = d.deptno",
        )
        assert outcome.matches == []
        assert "join kind mismatch" in outcome.reason


class TestAggregateRoot:
    """Tests for Aggregate-rooted MVs (the aggregate checker finishes the job)."""

    MV_SQL = "SELECT deptno, commission, SUM(salary) FROM t GROUP BY deptno, commission"

    def test_match_without_compensation(self, match):
        outcome = match(self.MV_SQL, "SELECT deptno, SUM(salary) FROM t GROUP BY deptno")

        found = outcome.matches[0]
        assert found.path == ()
        assert found.compensation is None

    def test_where_becomes_residual(self, match):
        outcome = match(self.MV_SQL, "SELECT deptno, SUM(salary) FROM t WHERE deptno > 1 GROUP BY deptno")
        found = outcome.matches[0]
        assert found.residual_predicates == (BinaryOp(">", ColumnRef("t", "deptno"), Literal(1)),)

    def test_match_below_having(self, match):
        """Test the match path points below the HAVING filter."""
        outcome = match(self.MV_SQL, "SELECT deptno, SUM(salary) FROM t GROUP BY deptno HAVING SUM(salary) > 10")
        assert [m.path for m in outcome.matches] == [(0,)]

    def test_query_without_aggregate(self, match):
        outcome = match(self.MV_SQL, "SELECT * FROM t")
        assert outcome.matches == []
        assert outcome.reason.startswith("query has no aggregate operator")
