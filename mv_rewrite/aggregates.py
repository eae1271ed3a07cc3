"""
Aggregate Compatibility Checker: derive a query Aggregate from an aggregate MV.

Grouping:
- every query key must be expressible over the MV group keys (an MV key
  itself, an equivalent expression, or an expression built only from MV
  keys, which the keys functionally determine)
- re-grouping is skipped only when the query keys map one-to-one onto the
  MV keys; otherwise a re-grouping Aggregate is added above the MV scan

Aggregates by category:
- DISTRIBUTIVE (SUM, COUNT, MIN, MAX): re-aggregate the MV column
  (COUNT re-aggregates as SUM, wrapped in COALESCE(.., 0) for an empty grouping)
- ALGEBRAIC (AVG): SUM / COUNT of the same argument
- DISTINCT aggregates: only an identical MV column without re-grouping

Residual predicates may only reference MV group keys.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from mv_rewrite.canonicalizer import canonicalize_expr
from mv_rewrite.catalog import mv_output_name
from mv_rewrite.plan_nodes import (
    Aggregate,
    BinaryOp,
    ColumnRef,
    Expression,
    FunctionCall,
    Literal,
    NamedExpr,
    make_conjunction,
)
from mv_rewrite.predicates import express_over
from mv_rewrite.rewriter import Compensation
from mv_rewrite.sql_render import expr_to_sql

if TYPE_CHECKING:
    from mv_rewrite.catalog import MaterializedView
    from mv_rewrite.matcher import StructuralMatch


logger: logging.Logger = logging.getLogger(__name__)


class AggregateCategory(Enum):
    """Category of aggregate function for re-aggregation."""
    DISTRIBUTIVE = "distributive"  # SUM, COUNT, MIN, MAX
    ALGEBRAIC = "algebraic"        # AVG: derived from distributive parts
    HOLISTIC = "holistic"          # cannot be re-aggregated


AGG_CATEGORY_MAP: dict[str, AggregateCategory] = {
    "sum": AggregateCategory.DISTRIBUTIVE,
    "count": AggregateCategory.DISTRIBUTIVE,
    "min": AggregateCategory.DISTRIBUTIVE,
    "max": AggregateCategory.DISTRIBUTIVE,
    "avg": AggregateCategory.ALGEBRAIC,
}

# Function applied to an MV column when re-grouping
REAGGREGATE: dict[str, str] = {
    "sum": "sum",
    "count": "sum",
    "min": "min",
    "max": "max",
}


def get_aggregate_category(func_name: str) -> AggregateCategory:
    """Category of an aggregate; unknown functions are HOLISTIC."""
    return AGG_CATEGORY_MAP.get(func_name.lower(), AggregateCategory.HOLISTIC)


@dataclass
class AggregateVerdict:
    """Outcome of the aggregate compatibility check."""
    ok: bool
    reason: str = ""
    compensation: Compensation | None = None
    regroup: bool = False


def _describe(expr: Expression) -> str:
    return expr_to_sql(expr)


def _reject(reason: str) -> AggregateVerdict:
    return AggregateVerdict(ok=False, reason=reason)


class _Names:
    """Output names of the re-grouping Aggregate, kept unique."""

    def __init__(self, reserved: list[str]):
        self.taken = set(reserved)

    def hidden(self, base: str) -> str:
        name = base
        i = 1
        while name in self.taken:
            name = f"{base}_{i}"
            i += 1
        self.taken.add(name)
        return name


def check_aggregate(
    match: "StructuralMatch",
    query_node: Aggregate,
    mv: "MaterializedView",
) -> AggregateVerdict:
    """
    Check that the query Aggregate can be computed from the MV and build the compensation.

    Args:
        match: Structural match of the MV's Aggregate root at query_node
        query_node: Canonical query Aggregate
        mv: Aggregate MV

    Returns:
        AggregateVerdict; on rejection, reason names the first
        unsatisfiable key, residual or function
    """
    definition = mv.canonical_definition
    if not isinstance(definition, Aggregate):
        return _reject(f"MV {mv.name} is not an aggregation")
    classes = match.mv_classes

    def mv_column(ne: NamedExpr) -> ColumnRef:
        return ColumnRef(mv.name, mv_output_name(ne.qualifier, ne.name))

    key_available = [(match.map_mv_expr(ne.expr), mv_column(ne)) for ne in definition.group_keys]
    agg_lookup: dict[str, ColumnRef] = {}
    for ne in definition.aggregates:
        agg_lookup.setdefault(classes.canonical_key(match.map_mv_expr(ne.expr)), mv_column(ne))

    # Residuals: filters on group keys commute with grouping
    residuals = []
    for conj in match.residual_predicates:
        expressed = express_over(conj, key_available, classes)
        if expressed is None:
            return _reject(f"residual predicate references non-key columns: {_describe(conj)}")
        residuals.append(expressed)

    # Grouping keys
    keys: list[NamedExpr] = []
    for key in query_node.group_keys:
        expressed = express_over(key.expr, key_available, classes)
        if expressed is None:
            return _reject(f"group key {key.name} ({_describe(key.expr)}) not derivable from MV keys")
        keys.append(NamedExpr(key.name, expressed, key.qualifier))

    mv_key_columns = {mv_column(ne) for ne in definition.group_keys}
    key_targets = [k.expr for k in keys]
    one_to_one = (
        len(keys) == len(definition.group_keys)
        and all(isinstance(e, ColumnRef) for e in key_targets)
        and set(key_targets) == mv_key_columns
    )
    regroup = not one_to_one

    names = _Names([ne.name for ne in query_node.group_keys + query_node.aggregates])
    regroup_aggregates: list[NamedExpr] = []
    outputs: list[NamedExpr] = []

    for agg in query_node.aggregates:
        call = agg.expr
        if not isinstance(call, FunctionCall):
            return _reject(f"aggregate output {agg.name} is not an aggregate call")
        category = get_aggregate_category(call.name)
        identical = agg_lookup.get(classes.canonical_key(call))

        if not regroup:
            if identical is not None:
                outputs.append(NamedExpr(agg.name, identical, agg.qualifier))
                continue
            if category == AggregateCategory.ALGEBRAIC and not call.distinct:
                parts = _avg_parts(call, agg_lookup, classes)
                if parts is None:
                    return _reject(f"AVG needs SUM and COUNT of the same argument: {_describe(call)}")
                outputs.append(NamedExpr(agg.name, BinaryOp("/", parts[0], parts[1]), agg.qualifier))
                continue
            return _reject(f"no MV column provides {_describe(call)}")

        # Re-grouping needed
        if call.distinct:
            return _reject(f"{call.name.upper()}(DISTINCT ...) cannot be re-aggregated: {_describe(call)}")
        if category == AggregateCategory.HOLISTIC:
            return _reject(f"{call.name.upper()} cannot be re-aggregated")

        if category == AggregateCategory.ALGEBRAIC:
            parts = _avg_parts(call, agg_lookup, classes)
            if parts is None:
                return _reject(f"AVG needs SUM and COUNT of the same argument: {_describe(call)}")
            sum_name = names.hidden(f"{agg.name}__sum")
            count_name = names.hidden(f"{agg.name}__count")
            regroup_aggregates.append(NamedExpr(sum_name, FunctionCall("sum", (parts[0],)), agg.qualifier))
            regroup_aggregates.append(NamedExpr(count_name, FunctionCall("sum", (parts[1],)), agg.qualifier))
            outputs.append(NamedExpr(
                agg.name,
                BinaryOp("/", ColumnRef(agg.qualifier, sum_name), ColumnRef(agg.qualifier, count_name)),
                agg.qualifier,
            ))
            continue

        if identical is None:
            return _reject(f"no MV column provides {_describe(call)}")
        regroup_aggregates.append(
            NamedExpr(agg.name, FunctionCall(REAGGREGATE[call.name], (identical,)), agg.qualifier)
        )
        ref = ColumnRef(agg.qualifier, agg.name)
        if call.name == "count" and not query_node.group_keys:
            outputs.append(NamedExpr(agg.name, FunctionCall("coalesce", (ref, Literal(0))), agg.qualifier))
        else:
            outputs.append(NamedExpr(agg.name, ref, agg.qualifier))

    residual = make_conjunction(residuals)
    residual = canonicalize_expr(residual) if residual is not None else None

    if regroup:
        key_outputs = [NamedExpr(k.name, k.output_ref(), k.qualifier) for k in keys]
        compensation = Compensation(
            residual=residual,
            regroup=True,
            regroup_keys=tuple(keys),
            regroup_aggregates=tuple(regroup_aggregates),
            outputs=tuple(key_outputs + outputs),
        )
    else:
        compensation = Compensation(residual=residual, outputs=tuple(keys + outputs))

    logger.debug("MV %s: aggregate derivation ok (regroup=%s)", mv.name, regroup)
    return AggregateVerdict(ok=True, compensation=compensation, regroup=regroup)


def _avg_parts(call: FunctionCall, agg_lookup: dict[str, ColumnRef], classes) -> tuple[ColumnRef, ColumnRef] | None:
    """MV columns holding SUM(x) and COUNT(x) for AVG(x)."""
    sum_col = agg_lookup.get(classes.canonical_key(FunctionCall("sum", call.args)))
    count_col = agg_lookup.get(classes.canonical_key(FunctionCall("count", call.args)))
    if sum_col is None or count_col is None:
        return None
    return sum_col, count_col
