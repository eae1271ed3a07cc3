"""
Unit tests for sql_render module.
"""

from decimal import Decimal

from mv_rewrite.plan_nodes import (
    BinaryOp,
    ColumnRef,
    FunctionCall,
    Join,
    JoinKind,
    Literal,
    Scan,
)
from mv_rewrite.sql_render import describe_node, expr_to_sql, render_plan


class TestExprToSql:
    """Tests for expr_to_sql."""

    def test_column_and_literals(self):
        assert expr_to_sql(ColumnRef("t", "salary")) == "t.salary"
        assert expr_to_sql(ColumnRef("", "total")) == "total"
        assert expr_to_sql(Literal(10)) == "10"
        assert expr_to_sql(Literal(Decimal("1.5"))) == "1.5"
        assert expr_to_sql(Literal("x")) == "'x'"
        assert expr_to_sql(Literal(None)) == "NULL"

    def test_comparison(self):
        assert expr_to_sql(BinaryOp(">", ColumnRef("t", "salary"), Literal(10))) == "t.salary > 10"

    def test_nested_operands_parenthesized(self):
        """Test compound operands keep their grouping."""
        expr = BinaryOp("*", BinaryOp("+", ColumnRef("t", "a"), Literal(1)), Literal(2))
        assert expr_to_sql(expr) == "(t.a + 1) * 2"

    def test_nary_and(self):
        parts = tuple(BinaryOp(">", ColumnRef("t", c), Literal(0)) for c in ("a", "b", "c"))
        sql = expr_to_sql(FunctionCall("and", parts))
        assert sql == "(t.a > 0) AND (t.b > 0) AND (t.c > 0)"

    def test_aggregates(self):
        assert expr_to_sql(FunctionCall("count", ())) == "COUNT(*)"
        assert expr_to_sql(FunctionCall("sum", (ColumnRef("t", "salary"),))) == "SUM(t.salary)"
        distinct = FunctionCall("count", (ColumnRef("t", "empid"),), distinct=True)
        assert expr_to_sql(distinct) == "COUNT(DISTINCT t.empid)"

    def test_coalesce(self):
        expr = FunctionCall("coalesce", (ColumnRef("", "cnt"), Literal(0)))
        assert expr_to_sql(expr) == "COALESCE(cnt, 0)"


class TestRenderPlan:
    """Tests for describe_node and render_plan."""

    def test_describe_scan(self):
        assert describe_node(Scan(table="t", alias="e", columns=("a",))) == "Scan t AS e (partitions: all)"
        pruned = Scan(table="t", alias="t", columns=("a",), partitions=("p1", "p2"))
        assert describe_node(pruned) == "Scan t AS t (partitions: p1, p2)"

    def test_children_indented(self, build):
        plan = build("SELECT deptno, SUM(salary) FROM t WHERE salary > 1 GROUP BY deptno")
        lines = render_plan(plan).splitlines()

        assert lines[0].startswith("Aggregate keys=[deptno := t.deptno]")
        assert lines[1] == "  Filter t.salary > 1"
        assert lines[2] == "    Scan t AS t (partitions: all)"

    def test_join(self):
        left = Scan(table="t", alias="e", columns=("deptno",))
        right = Scan(table="depts", alias="d", columns=("deptno",))
        join = Join(JoinKind.LEFT, BinaryOp("=", ColumnRef("e", "deptno"), ColumnRef("d", "deptno")), left, right)
        assert describe_node(join) == "Join LEFT ON e.deptno = d.deptno"
