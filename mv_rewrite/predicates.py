"""
Predicates: conservative implication and expressibility checks.

Used by the matcher and the aggregate checker:
- map_aliases: rename ColumnRef qualifiers (MV namespace -> query namespace)
- conjunct_implied: does a set of conjuncts imply one conjunct
- express_over: rewrite an expression over a fixed set of available columns

Implication is sound but incomplete. A conjunct is implied when:
1. an equivalent conjunct is present
2. it is a column equality and both sides share an equivalence class
3. it is a single-column range bound against a literal implied by another
   bound on the same column (x > 10 implies x > 5, x = 3 implies x >= 1)

Anything else is "not implied", which makes the caller reject the match.
"""

from dataclasses import replace
from typing import Mapping, Sequence

from mv_rewrite.canonicalizer import FLIPPED_OPS, EquivalenceClasses, fold_constant
from mv_rewrite.plan_nodes import (
    BinaryOp,
    ColumnRef,
    Expression,
    FunctionCall,
    Literal,
    is_aggregate_call,
    transform_expr,
)


# For a premise bound "x <premise_op> a" to imply "x <conclusion_op> b",
# the comparison a <check_op> b must hold.
RANGE_RULES: dict[str, dict[str, str]] = {
    ">": {">": ">=", ">=": ">", "=": ">"},
    ">=": {">": ">=", ">=": ">=", "=": ">="},
    "<": {"<": "<=", "<=": "<", "=": "<"},
    "<=": {"<": "<=", "<=": "<=", "=": "<="},
    "=": {"=": "="},
    "<>": {"=": "<>", ">": ">=", ">=": ">", "<": "<=", "<=": "<", "<>": "="},
}


def map_aliases(expr: Expression, mapping: Mapping[str, str]) -> Expression:
    """Rename ColumnRef qualifiers found in mapping; eq_class tags are dropped."""

    def rename(node: Expression) -> Expression:
        if isinstance(node, ColumnRef):
            return ColumnRef(mapping.get(node.table, node.table), node.column)
        return replace(node, eq_class=None)

    return transform_expr(expr, rename)


def _bound(conj: Expression) -> tuple[Expression, str, object] | None:
    """Split "column op literal" (either operand order) into (column, op, value)."""
    if not isinstance(conj, BinaryOp) or conj.op not in RANGE_RULES:
        return None
    if isinstance(conj.left, ColumnRef) and isinstance(conj.right, Literal):
        return conj.left, conj.op, conj.right.value
    if isinstance(conj.right, ColumnRef) and isinstance(conj.left, Literal):
        op = FLIPPED_OPS.get(conj.op, conj.op)
        return conj.right, op, conj.left.value
    return None


def range_implies(premise: Expression, conclusion: Expression, classes: EquivalenceClasses) -> bool:
    """
    Check if one single-column bound implies another.

    Args:
        premise: Known-true conjunct
        conclusion: Conjunct to prove
        classes: Equivalences used to identify the column

    Returns:
        True only when both are bounds on the same column and the literal
        values are comparable and ordered accordingly
    """
    p = _bound(premise)
    c = _bound(conclusion)
    if p is None or c is None:
        return False
    p_col, p_op, p_value = p
    c_col, c_op, c_value = c
    if not classes.equivalent(p_col, c_col):
        return False
    check_op = RANGE_RULES[c_op].get(p_op)
    if check_op is None:
        return False
    folded, outcome = fold_constant(check_op, [p_value, c_value])
    return folded and outcome is True


def conjunct_equivalent(left: Expression, right: Expression, classes: EquivalenceClasses) -> bool:
    """Structural equivalence of two conjuncts under classes."""
    return classes.equivalent(left, right)


def conjunct_implied(
    conclusion: Expression,
    premises: Sequence[Expression],
    classes: EquivalenceClasses,
) -> bool:
    """
    Check if the conjunction of premises implies conclusion.

    Args:
        conclusion: Conjunct to prove
        premises: Conjuncts known to hold
        classes: Equivalence classes known to hold together with premises
    """
    if isinstance(conclusion, Literal) and conclusion.value is True:
        return True
    if (isinstance(conclusion, BinaryOp) and conclusion.op == "="
            and classes.equivalent(conclusion.left, conclusion.right)):
        return True
    for premise in premises:
        if conjunct_equivalent(premise, conclusion, classes):
            return True
        if range_implies(premise, conclusion, classes):
            return True
    return False


def express_over(
    expr: Expression,
    available: Sequence[tuple[Expression, ColumnRef]],
    classes: EquivalenceClasses,
) -> Expression | None:
    """
    Rewrite expr so that it only reads the available columns.

    Args:
        expr: Expression in the query namespace
        available: (expression it computes, column holding it) pairs
        classes: Equivalences under which sub-expressions may be substituted

    Returns:
        Rewritten expression, or None if some column reference cannot be
        covered. Aggregate calls are only covered by an identical available
        expression.
    """
    lookup: dict[str, ColumnRef] = {}
    for source, target in available:
        lookup.setdefault(classes.canonical_key(source), target)

    def rewrite(node: Expression) -> Expression | None:
        hit = lookup.get(classes.canonical_key(node))
        if hit is not None:
            return hit
        if isinstance(node, ColumnRef):
            return None
        if isinstance(node, Literal):
            return replace(node, eq_class=None)
        if isinstance(node, FunctionCall):
            if is_aggregate_call(node):
                return None
            args = []
            for arg in node.args:
                new_arg = rewrite(arg)
                if new_arg is None:
                    return None
                args.append(new_arg)
            return FunctionCall(node.name, tuple(args), node.distinct)
        if isinstance(node, BinaryOp):
            left = rewrite(node.left)
            right = rewrite(node.right)
            if left is None or right is None:
                return None
            return BinaryOp(node.op, left, right)
        return None

    return rewrite(expr)
