"""
Structural Matcher: find query sub-trees an MV definition can replace.

Both plans must be canonical. The MV root is compared top-down against
every query node of the same variant. Along the way the matcher builds:
- alias mapping: MV scan alias / block qualifier -> query one (injective)
- residual predicates: query conjuncts the MV does not apply; they are
  re-applied as a compensation Filter above the MV scan

Rules:
- Scan: same base table, same pruned partition set
- Join: same kind, equivalent condition (INNER/CROSS: query conditions
  beyond the MV's become residuals); commutative kinds also try the
  swapped input order
- Filter: query predicate must imply the MV predicate; a query Filter with
  no MV counterpart becomes residual; an MV Filter with no query
  counterpart never matches
- No residual may come from below a non-inner join
- Project / Aggregate below the MV root must match exactly

At a Project or SPJ root the query outputs and residuals must be
expressible over the MV outputs; the compensation is computed here. An
Aggregate root is handed to the aggregate checker.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

from mv_rewrite.canonicalizer import EquivalenceClasses, canonicalize_expr, column_equalities
from mv_rewrite.plan_nodes import (
    Aggregate,
    ColumnRef,
    Expression,
    Filter,
    Join,
    JoinKind,
    NamedExpr,
    OperatorNode,
    Project,
    Scan,
    conjuncts,
    make_conjunction,
    output_columns,
    walk,
)
from mv_rewrite.predicates import (
    conjunct_equivalent,
    conjunct_implied,
    express_over,
    map_aliases,
)
from mv_rewrite.rewriter import Compensation
from mv_rewrite.sql_render import expr_to_sql

if TYPE_CHECKING:
    from mv_rewrite.catalog import MaterializedView


logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructuralMatch:
    """A query sub-tree that the MV definition matches."""
    path: tuple[int, ...]
    node: OperatorNode
    alias_mapping: Mapping[str, str] = field(hash=False)
    residual_predicates: tuple[Expression, ...] = ()
    mv_classes: EquivalenceClasses = field(default_factory=EquivalenceClasses, compare=False, repr=False)
    compensation: Compensation | None = None  # None for Aggregate roots

    def map_mv_expr(self, expr: Expression) -> Expression:
        """Translate an MV-namespace expression into the query namespace."""
        return map_aliases(expr, self.alias_mapping)


@dataclass
class MatchOutcome:
    """All matches of one MV, or the reason there are none."""
    matches: list[StructuralMatch] = field(default_factory=list)
    reason: str = ""


@dataclass
class _State:
    aliases: dict[str, str] = field(default_factory=dict)
    residuals: list[Expression] = field(default_factory=list)

    def copy(self) -> "_State":
        return _State(dict(self.aliases), list(self.residuals))

    def bind(self, mv_alias: str, query_alias: str) -> bool:
        """Add mv_alias -> query_alias, keeping the mapping injective."""
        bound = self.aliases.get(mv_alias)
        if bound is not None:
            return bound == query_alias
        if query_alias in self.aliases.values():
            return False
        self.aliases[mv_alias] = query_alias
        return True


def _mv_classes(node: OperatorNode, aliases: Mapping[str, str]) -> EquivalenceClasses:
    classes = node.classes or EquivalenceClasses()
    return classes.remapped(lambda e: map_aliases(e, aliases))


class StructuralMatcher:
    """
    Matches one canonical MV definition against a canonical query plan.

    Args:
        mv: The MV (its canonical_definition is used)
    """

    def __init__(self, mv: "MaterializedView"):
        self.mv = mv
        self.definition = mv.canonical_definition
        self._reason = ""

    def _fail(self, reason: str) -> None:
        if not self._reason:
            self._reason = reason
        return None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def match(self, query: OperatorNode) -> MatchOutcome:
        """
        Compare the MV root against every query node.

        Args:
            query: Canonical query plan

        Returns:
            MatchOutcome with matches in pre-order of the query tree
        """
        root = self.definition
        outcome = MatchOutcome()
        candidates = 0
        for path, node in walk(query):
            if node.kind != root.kind:
                continue
            candidates += 1
            self._reason = ""
            found = self._match_root(path, node, root)
            if found is not None:
                outcome.matches.append(found)
            elif not outcome.reason:
                outcome.reason = self._reason or "definition does not match"

        if not outcome.matches and candidates == 0:
            outcome.reason = f"query has no {root.kind.value} operator to match the MV root"
        if outcome.matches:
            outcome.reason = ""
        logger.debug("MV %s: %d structural match(es)", self.mv.name, len(outcome.matches))
        return outcome

    def _match_root(
        self,
        path: tuple[int, ...],
        q: OperatorNode,
        m: OperatorNode,
    ) -> StructuralMatch | None:
        if isinstance(m, (Aggregate, Project)):
            state = self._match(q.child, m.child, _State(), below_outer=False)
        else:
            state = self._match(q, m, _State(), below_outer=False)
        if state is None:
            return None

        mv_classes = _mv_classes(m, state.aliases)
        match = StructuralMatch(
            path=path,
            node=q,
            alias_mapping=dict(state.aliases),
            residual_predicates=tuple(state.residuals),
            mv_classes=mv_classes,
        )
        if isinstance(m, Aggregate):
            return match

        compensation = self._derive_compensation(q, m, match)
        if compensation is None:
            return None
        return StructuralMatch(
            path=match.path,
            node=match.node,
            alias_mapping=match.alias_mapping,
            residual_predicates=match.residual_predicates,
            mv_classes=match.mv_classes,
            compensation=compensation,
        )

    def _derive_compensation(
        self,
        q: OperatorNode,
        m: OperatorNode,
        match: StructuralMatch,
    ) -> Compensation | None:
        """Express residuals and query outputs over the MV columns (Project / SPJ roots)."""
        mv_exprs: dict[str, Expression] = {}
        if isinstance(m, Project):
            mv_exprs = {ne.output_ref().column: ne.expr for ne in m.exprs}

        available: list[tuple[Expression, ColumnRef]] = []
        for out in self.mv.output:
            ref = out.expr
            source = mv_exprs.get(ref.column, ref) if isinstance(m, Project) else ref
            available.append((match.map_mv_expr(source), ColumnRef(self.mv.name, out.name)))

        residuals = []
        for conj in match.residual_predicates:
            expressed = express_over(conj, available, match.mv_classes)
            if expressed is None:
                return self._fail(f"residual predicate not expressible over MV outputs: {_show(conj)}")
            residuals.append(expressed)

        if isinstance(q, Project):
            wanted = [(ne.name, ne.expr, ne.qualifier) for ne in q.exprs]
        else:
            wanted = [(ref.column, ref, ref.table) for ref in output_columns(q)]

        outputs = []
        for name, expr, qualifier in wanted:
            expressed = express_over(expr, available, match.mv_classes)
            if expressed is None:
                return self._fail(f"output {name} not expressible over MV outputs: {_show(expr)}")
            outputs.append(NamedExpr(name, expressed, qualifier))

        residual = make_conjunction(residuals)
        return Compensation(
            residual=canonicalize_expr(residual) if residual is not None else None,
            outputs=tuple(outputs),
        )

    # ------------------------------------------------------------------
    # Recursive matching
    # ------------------------------------------------------------------

    def _match(
        self,
        q: OperatorNode,
        m: OperatorNode,
        state: _State,
        below_outer: bool,
    ) -> _State | None:
        if isinstance(q, Filter):
            if isinstance(m, Filter):
                paired = self._match_filter(q, m, state, below_outer)
                if paired is not None:
                    return paired
            return self._absorb_filter(q, m, state, below_outer)
        if isinstance(m, Filter):
            return self._fail(f"MV filter has no query counterpart (query has {q.kind.value})")
        if q.kind != m.kind:
            return self._fail(f"operator mismatch: query {q.kind.value}, MV {m.kind.value}")
        if isinstance(q, Scan):
            return self._match_scan(q, m, state)
        if isinstance(q, Join):
            return self._match_join(q, m, state, below_outer)
        return self._match_exact(q, m, state, below_outer)

    def _match_scan(self, q: Scan, m: Scan, state: _State) -> _State | None:
        if q.table != m.table:
            return self._fail(f"table mismatch: query {q.table}, MV {m.table}")
        q_parts = None if q.partitions is None else sorted(q.partitions)
        m_parts = None if m.partitions is None else sorted(m.partitions)
        if q_parts != m_parts:
            return self._fail(f"partition set mismatch on {q.table}")
        if not set(q.columns) <= set(m.columns):
            return self._fail(f"MV scan of {m.table} lacks columns")
        result = state.copy()
        if not result.bind(m.alias, q.alias):
            return self._fail(f"alias {m.alias} cannot map to {q.alias}")
        return result

    def _match_filter(self, q: Filter, m: Filter, state: _State, below_outer: bool) -> _State | None:
        child = self._match(q.child, m.child, state, below_outer)
        if child is None:
            return None
        classes = q.classes or EquivalenceClasses()
        q_conj = conjuncts(q.predicate)
        m_conj = [map_aliases(c, child.aliases) for c in conjuncts(m.predicate)]

        for conj in m_conj:
            if not conjunct_implied(conj, q_conj, classes):
                return self._fail(f"query predicate does not imply MV conjunct {_show(conj)}")

        # Only what the MV itself guarantees may drop a query conjunct
        mv_classes = _mv_classes(m, child.aliases)
        residual = [c for c in q_conj if not conjunct_implied(c, m_conj, mv_classes)]
        if residual and below_outer:
            return self._fail("residual predicate below an outer join")
        child.residuals.extend(residual)
        return child

    def _absorb_filter(self, q: Filter, m: OperatorNode, state: _State, below_outer: bool) -> _State | None:
        if below_outer:
            return self._fail("query filter below an outer join has no MV counterpart")
        child = self._match(q.child, m, state, below_outer)
        if child is None:
            return None
        child.residuals.extend(conjuncts(q.predicate))
        return child

    def _match_join(self, q: Join, m: Join, state: _State, below_outer: bool) -> _State | None:
        if q.join_kind != m.join_kind:
            return self._fail(f"join kind mismatch: query {q.join_kind.value}, MV {m.join_kind.value}")

        inner = q.join_kind in (JoinKind.INNER, JoinKind.CROSS)
        child_outer = below_outer or not inner
        orders = [(q.left, q.right)]
        if q.join_kind.is_commutative:
            orders.append((q.right, q.left))

        for q_first, q_second in orders:
            left = self._match(q_first, m.left, state, child_outer)
            if left is None:
                continue
            right = self._match(q_second, m.right, left, child_outer)
            if right is None:
                continue
            result = self._match_condition(q, m, right, inner, below_outer)
            if result is not None:
                return result
        return None

    def _match_condition(
        self,
        q: Join,
        m: Join,
        state: _State,
        inner: bool,
        below_outer: bool,
    ) -> _State | None:
        classes = (q.left.classes or EquivalenceClasses()).merged(q.right.classes or EquivalenceClasses())
        q_conj = conjuncts(q.condition)
        m_conj = [map_aliases(c, state.aliases) for c in conjuncts(m.condition)]
        mv_classes = _mv_classes(m.left, state.aliases).merged(
            _mv_classes(m.right, state.aliases),
            EquivalenceClasses(column_equalities(make_conjunction(m_conj))),
        )

        unmatched_q = [c for c in q_conj if not conjunct_implied(c, m_conj, mv_classes)]
        unmatched_m = [mc for mc in m_conj if not any(conjunct_equivalent(c, mc, classes) for c in q_conj)]

        if not inner:
            if unmatched_q or unmatched_m:
                return self._fail(f"{q.join_kind.value} join conditions differ")
            return state

        for conj in unmatched_m:
            if not conjunct_implied(conj, q_conj, classes):
                return self._fail(f"join condition does not imply MV conjunct {_show(conj)}")
        if unmatched_q and below_outer:
            return self._fail("residual join condition below an outer join")
        result = state.copy()
        result.residuals.extend(unmatched_q)
        return result

    def _match_exact(
        self,
        q: Project | Aggregate,
        m: Project | Aggregate,
        state: _State,
        below_outer: bool,
    ) -> _State | None:
        """Project / Aggregate below the MV root: same outputs, no residual from below."""
        child = self._match(q.child, m.child, state, below_outer)
        if child is None:
            return None
        if len(child.residuals) != len(state.residuals):
            return self._fail(f"residual predicate below a nested {q.kind.value}")

        if isinstance(q, Project):
            pairs = list(zip(q.exprs, m.exprs))
            same_shape = len(q.exprs) == len(m.exprs)
        else:
            pairs = list(zip(q.group_keys + q.aggregates, m.group_keys + m.aggregates))
            same_shape = (len(q.group_keys) == len(m.group_keys)
                          and len(q.aggregates) == len(m.aggregates))
        if not same_shape:
            return self._fail(f"nested {q.kind.value} outputs differ")

        classes = q.child.classes or EquivalenceClasses()
        result = child.copy()
        for q_ne, m_ne in pairs:
            if q_ne.name != m_ne.name:
                return self._fail(f"nested {q.kind.value} output names differ: {q_ne.name} vs {m_ne.name}")
            if not classes.equivalent(q_ne.expr, map_aliases(m_ne.expr, child.aliases)):
                return self._fail(f"nested {q.kind.value} output {q_ne.name} differs")
            if not result.bind(m_ne.qualifier, q_ne.qualifier):
                return self._fail(f"qualifier {m_ne.qualifier} cannot map to {q_ne.qualifier}")
        return result


def _show(expr: Expression) -> str:
    return expr_to_sql(expr)


def match_view(query: OperatorNode, mv: "MaterializedView") -> MatchOutcome:
    """
    Find every sub-tree of query the MV can replace.

    Args:
        query: Canonical query plan
        mv: MV with its canonical definition

    Returns:
        MatchOutcome (matches in pre-order, or the reason for none)
    """
    return StructuralMatcher(mv).match(query)
