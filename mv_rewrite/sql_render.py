"""
SQL rendering: plan expressions back to SQL text via sqlglot.

- expr_to_ast: Expression -> sqlglot expression tree
- expr_to_sql: Expression -> SQL string in a dialect
- render_plan: indented operator tree ("explain" output)
"""

from decimal import Decimal

from sqlglot import exp

from mv_rewrite.plan_nodes import (
    Aggregate,
    BinaryOp,
    ColumnRef,
    Expression,
    Filter,
    FunctionCall,
    Join,
    Literal,
    NamedExpr,
    OperatorNode,
    Project,
    Scan,
    children,
)


BINARY_NODES: dict[str, type] = {
    "+": exp.Add,
    "-": exp.Sub,
    "*": exp.Mul,
    "/": exp.Div,
    "=": exp.EQ,
    "<>": exp.NEQ,
    "<": exp.LT,
    "<=": exp.LTE,
    ">": exp.GT,
    ">=": exp.GTE,
    "and": exp.And,
    "or": exp.Or,
}

AGGREGATE_NODES: dict[str, type] = {
    "sum": exp.Sum,
    "count": exp.Count,
    "avg": exp.Avg,
    "min": exp.Min,
    "max": exp.Max,
}


def _is_compound(expr: Expression) -> bool:
    if isinstance(expr, BinaryOp):
        return True
    return isinstance(expr, FunctionCall) and expr.name in BINARY_NODES


def _operand(expr: Expression) -> exp.Expression:
    node = expr_to_ast(expr)
    return exp.Paren(this=node) if _is_compound(expr) else node


def _literal(lit: Literal) -> exp.Expression:
    value = lit.value
    if value is None:
        return exp.null()
    if isinstance(value, bool):
        return exp.true() if value else exp.false()
    if isinstance(value, (int, float, Decimal)):
        return exp.Literal.number(str(value))
    if lit.type_name == "datatype":
        return exp.DataType.build(str(value))
    return exp.Literal.string(str(value))


def expr_to_ast(expr: Expression) -> exp.Expression:
    """Build the sqlglot tree of an expression."""
    if isinstance(expr, ColumnRef):
        return exp.column(expr.column, table=expr.table or None)
    if isinstance(expr, Literal):
        return _literal(expr)
    if isinstance(expr, BinaryOp):
        node_type = BINARY_NODES[expr.op]
        return node_type(this=_operand(expr.left), expression=_operand(expr.right))

    name = expr.name
    if name in BINARY_NODES and len(expr.args) >= 2:
        node_type = BINARY_NODES[name]
        result = _operand(expr.args[0])
        for arg in expr.args[1:]:
            result = node_type(this=result, expression=_operand(arg))
        return result
    if name == "not" and len(expr.args) == 1:
        return exp.Not(this=_operand(expr.args[0]))
    if name == "neg" and len(expr.args) == 1:
        return exp.Neg(this=_operand(expr.args[0]))
    if name in AGGREGATE_NODES:
        if not expr.args:
            return exp.Count(this=exp.Star())
        arg = expr_to_ast(expr.args[0])
        if expr.distinct:
            arg = exp.Distinct(expressions=[arg])
        return AGGREGATE_NODES[name](this=arg)
    if name == "coalesce" and expr.args:
        return exp.Coalesce(
            this=expr_to_ast(expr.args[0]),
            expressions=[expr_to_ast(a) for a in expr.args[1:]],
        )
    return exp.Anonymous(this=name.upper(), expressions=[expr_to_ast(a) for a in expr.args])


def expr_to_sql(expr: Expression, dialect: str = "spark") -> str:
    """Render an expression as SQL text."""
    return expr_to_ast(expr).sql(dialect=dialect)


def _named(items: tuple[NamedExpr, ...], dialect: str) -> str:
    parts = []
    for ne in items:
        target = f"{ne.qualifier}.{ne.name}" if ne.qualifier else ne.name
        parts.append(f"{target} := {expr_to_sql(ne.expr, dialect)}")
    return ", ".join(parts)


def describe_node(node: OperatorNode, dialect: str = "spark") -> str:
    """One-line description of an operator (children not included)."""
    if isinstance(node, Scan):
        parts = "all" if node.partitions is None else ", ".join(node.partitions)
        return f"Scan {node.table} AS {node.alias} (partitions: {parts})"
    if isinstance(node, Filter):
        return f"Filter {expr_to_sql(node.predicate, dialect)}"
    if isinstance(node, Project):
        return f"Project [{_named(node.exprs, dialect)}]"
    if isinstance(node, Aggregate):
        return (
            f"Aggregate keys=[{_named(node.group_keys, dialect)}] "
            f"aggs=[{_named(node.aggregates, dialect)}]"
        )
    if isinstance(node, Join):
        cond = f" ON {expr_to_sql(node.condition, dialect)}" if node.condition is not None else ""
        swapped = " (commuted)" if node.commuted else ""
        return f"Join {node.join_kind.value.upper()}{cond}{swapped}"
    raise TypeError(f"Not an operator: {node!r}")


def render_plan(plan: OperatorNode, dialect: str = "spark", indent: str = "  ") -> str:
    """
    Render an operator tree, one operator per line, children indented.

    Args:
        plan: Root operator
        dialect: sqlglot dialect for expressions
        indent: Indentation per level

    Returns:
        Multi-line string
    """
    lines: list[str] = []

    def visit(node: OperatorNode, depth: int) -> None:
        lines.append(f"{indent * depth}{describe_node(node, dialect)}")
        for child in children(node):
            visit(child, depth + 1)

    visit(plan, 0)
    return "\n".join(lines)
