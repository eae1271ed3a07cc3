"""
Rewriter: replace a matched query sub-tree with a scan of the MV.

The replacement is built bottom-up:

    Scan(mv)  ->  Filter(residual)  ->  Aggregate(re-grouping)  ->  Project(outputs)

Each layer is only added when needed. The Project restores the output
columns (names, qualifiers, order) of the replaced sub-tree, so the
operators above it keep reading the same ColumnRefs.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from mv_rewrite.canonicalizer import canonicalize
from mv_rewrite.plan_nodes import (
    Aggregate,
    Expression,
    Filter,
    NamedExpr,
    OperatorNode,
    Project,
    Scan,
    output_columns,
    replace_at,
)

if TYPE_CHECKING:
    from mv_rewrite.catalog import MaterializedView


@dataclass(frozen=True)
class Compensation:
    """
    Operators to add on top of an MV scan.

    All expressions read MV columns (ColumnRef(mv name, column)) or, for
    outputs above a re-grouping, the re-grouping Aggregate's outputs.
    """
    residual: Expression | None = None
    regroup: bool = False
    regroup_keys: tuple[NamedExpr, ...] = ()
    regroup_aggregates: tuple[NamedExpr, ...] = ()
    outputs: tuple[NamedExpr, ...] = ()


def mv_scan(mv: "MaterializedView") -> Scan:
    """Scan reading every column of the MV."""
    return Scan(table=mv.name, alias=mv.name, columns=mv.column_names)


def _is_identity(plan: OperatorNode, outputs: tuple[NamedExpr, ...]) -> bool:
    wanted = tuple(ne.output_ref() for ne in outputs)
    return output_columns(plan) == wanted and all(ne.expr == ne.output_ref() for ne in outputs)


def compensation_plan(mv: "MaterializedView", compensation: Compensation) -> OperatorNode:
    """
    Build the sub-tree that replaces the matched query node.

    Args:
        mv: Chosen MV
        compensation: Residual filter, re-grouping and output expressions

    Returns:
        New operator sub-tree rooted at the MV scan's topmost compensation
    """
    plan: OperatorNode = mv_scan(mv)
    if compensation.residual is not None:
        plan = Filter(predicate=compensation.residual, child=plan)
    if compensation.regroup:
        plan = Aggregate(
            group_keys=compensation.regroup_keys,
            aggregates=compensation.regroup_aggregates,
            child=plan,
        )
    if not _is_identity(plan, compensation.outputs):
        plan = Project(exprs=compensation.outputs, child=plan)
    return plan


def compensation_operator_count(plan: OperatorNode) -> int:
    """Operators above the MV scan in a compensation plan."""
    count = 0
    while not isinstance(plan, Scan):
        count += 1
        plan = plan.child
    return count


def rewrite_plan(
    query: OperatorNode,
    path: tuple[int, ...],
    replacement: OperatorNode,
) -> OperatorNode:
    """
    Substitute replacement at path in the canonical query plan.

    Nodes off the rewritten path are shared with query; query itself is
    not modified. The new nodes are canonicalized so the returned plan
    carries equivalence classes like the rest of the tree.
    """
    return replace_at(query, path, canonicalize(replacement))
