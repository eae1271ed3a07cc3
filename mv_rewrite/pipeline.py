"""
Pipeline: the rewrite entry point.

    rewrite(plan, snapshot, config, statistics, versions) -> Rewritten | Unchanged

Stages per MV (MVs visited in name order, at most candidate_limit):
1. Structural match against the canonical query
2. Aggregate compatibility (Aggregate-rooted MVs only)
3. Freshness of every partition the matched sub-tree reads
Surviving candidates are ranked by cost and the cheapest one is applied.

Negative outcomes never raise: they become RejectionReasons. Only broken
invariants (PlanCycleError, CatalogConsistencyError) abort the call.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

from mv_rewrite.aggregates import check_aggregate
from mv_rewrite.canonicalizer import canonicalize
from mv_rewrite.freshness import check_freshness
from mv_rewrite.matcher import match_view
from mv_rewrite.plan_nodes import OperatorNode, check_tree
from mv_rewrite.ranker import RewriteCandidate, rank_candidates
from mv_rewrite.rewriter import compensation_plan, rewrite_plan
from mv_rewrite.trace import (
    RejectionReason,
    RejectionStage,
    RewriteTrace,
    StageVerdict,
    TraceEntry,
)

if TYPE_CHECKING:
    from mv_rewrite.catalog import MaterializedView, MvCatalogSnapshot
    from mv_rewrite.collaborators import PartitionVersionOracle, StatisticsProvider


logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewriteConfig:
    """
    Rewrite settings.

    staleness_tolerance_versions: accepted version lag per partition
        (None = strict freshness)
    candidate_limit: maximum number of MVs considered (None = all)
    """
    enabled: bool = True
    staleness_tolerance_versions: int | None = None
    candidate_limit: int | None = None


@dataclass(frozen=True)
class Rewritten:
    """The query now reads from mv_name."""
    plan: OperatorNode
    mv_name: str
    rejections: tuple[RejectionReason, ...]
    trace: RewriteTrace

    @property
    def rewritten(self) -> bool:
        return True


@dataclass(frozen=True)
class Unchanged:
    """No rewrite; plan is the caller's original plan."""
    plan: OperatorNode
    rejections: tuple[RejectionReason, ...]
    trace: RewriteTrace

    @property
    def rewritten(self) -> bool:
        return False

    @property
    def mv_name(self) -> None:
        return None


RewriteResult = Union[Rewritten, Unchanged]


def _evaluate_view(
    canonical: OperatorNode,
    mv: "MaterializedView",
    snapshot: "MvCatalogSnapshot",
    config: RewriteConfig,
    versions: "PartitionVersionOracle",
    entry: TraceEntry,
) -> tuple[RewriteCandidate | None, RejectionReason | None]:
    """Run match, aggregate and freshness checks for one MV."""
    outcome = match_view(canonical, mv)
    if not outcome.matches:
        entry.structural = StageVerdict.FAIL
        entry.detail = outcome.reason
        return None, RejectionReason(mv.name, RejectionStage.STRUCTURAL, outcome.reason)

    entry.structural = StageVerdict.PASS
    first_rejection: RejectionReason | None = None
    for match in outcome.matches:
        aggregate = StageVerdict.NOT_APPLICABLE
        compensation = match.compensation
        regroup = False
        if mv.is_aggregate:
            verdict = check_aggregate(match, match.node, mv)
            if not verdict.ok:
                if first_rejection is None:
                    entry.aggregate = StageVerdict.FAIL
                    first_rejection = RejectionReason(mv.name, RejectionStage.AGGREGATE, verdict.reason)
                continue
            aggregate = StageVerdict.PASS
            compensation = verdict.compensation
            regroup = verdict.regroup

        freshness = check_freshness(
            match.node, mv, snapshot, versions, config.staleness_tolerance_versions
        )
        if not freshness.fresh:
            if first_rejection is None:
                entry.aggregate = aggregate
                entry.freshness = StageVerdict.FAIL
                entry.max_lag = freshness.max_lag
                first_rejection = RejectionReason(mv.name, RejectionStage.FRESHNESS, freshness.reason)
            continue

        entry.aggregate = aggregate
        entry.freshness = StageVerdict.PASS
        entry.max_lag = freshness.max_lag
        entry.path = match.path
        entry.detail = ""
        candidate = RewriteCandidate(
            mv=mv,
            path=match.path,
            node=match.node,
            replacement=compensation_plan(mv, compensation),
            freshness=freshness,
            regroup=regroup,
        )
        return candidate, None

    entry.detail = first_rejection.message if first_rejection else ""
    return None, first_rejection


def rewrite(
    plan: OperatorNode,
    snapshot: "MvCatalogSnapshot",
    config: RewriteConfig,
    statistics: "StatisticsProvider",
    versions: "PartitionVersionOracle",
) -> RewriteResult:
    """
    Rewrite a query plan to read from the best matching fresh MV.

    Args:
        plan: Query operator tree
        snapshot: Catalog snapshot, read once for the whole call
        config: Rewrite settings
        statistics: Row-count estimates for costing
        versions: Current partition versions

    Returns:
        Rewritten(plan, mv_name, ...) or Unchanged(plan, ...); both carry
        the rejection reasons and the trace

    Raises:
        PlanCycleError: plan is not a tree
        CatalogConsistencyError: partition missing from the catalog or a
            partition version went backwards
    """
    check_tree(plan)
    if not config.enabled:
        logger.debug("Rewrite disabled")
        return Unchanged(plan=plan, rejections=(), trace=RewriteTrace(snapshot.version))

    canonical = canonicalize(plan)
    names = snapshot.view_names
    limit = config.candidate_limit
    considered = names if limit is None else names[:max(0, limit)]
    skipped = names[len(considered):]

    entries: dict[str, TraceEntry] = {}
    rejections: dict[str, list[RejectionReason]] = {}
    candidates: list[RewriteCandidate] = []

    for name in considered:
        mv = snapshot.views[name]
        entry = TraceEntry(mv_name=name)
        entries[name] = entry
        candidate, rejection = _evaluate_view(canonical, mv, snapshot, config, versions, entry)
        if candidate is not None:
            candidates.append(candidate)
        elif rejection is not None:
            rejections.setdefault(name, []).append(rejection)
            logger.debug("MV %s rejected at %s: %s", name, rejection.stage.value, rejection.message)

    for name in skipped:
        entries[name] = TraceEntry(mv_name=name, detail="candidate limit reached")
        rejections.setdefault(name, []).append(RejectionReason(
            name, RejectionStage.LIMIT, f"candidate limit {limit} reached"
        ))

    ranked = rank_candidates(candidates, statistics)
    for candidate in ranked.ranked:
        entries[candidate.mv.name].cost = candidate.cost
    winner = ranked.winner
    if winner is not None:
        for loser in ranked.losers:
            rejections.setdefault(loser.mv.name, []).append(RejectionReason(
                loser.mv.name,
                RejectionStage.COST,
                f"cost {loser.cost:.1f} ({loser.compensation_ops} compensation ops) loses to "
                f"{winner.mv.name} cost {winner.cost:.1f} ({winner.compensation_ops} compensation ops)",
            ))
        entries[winner.mv.name].chosen = True

    ordered_rejections = tuple(r for name in names for r in rejections.get(name, []))
    trace = RewriteTrace(
        snapshot_version=snapshot.version,
        entries=tuple(entries[name] for name in names),
        chosen=winner.mv.name if winner is not None else None,
    )

    if winner is None:
        logger.debug("No rewrite: %d MV(s) rejected", len(ordered_rejections))
        return Unchanged(plan=plan, rejections=ordered_rejections, trace=trace)

    new_plan = rewrite_plan(canonical, winner.path, winner.replacement)
    logger.info(
        "Rewrote %s at path %s using %s (cost %.1f)",
        winner.node.kind.value,
        list(winner.path),
        winner.mv.name,
        winner.cost,
    )
    return Rewritten(
        plan=new_plan,
        mv_name=winner.mv.name,
        rejections=ordered_rejections,
        trace=trace,
    )
