"""
Ranker: order rewrite candidates by estimated cost.

Cost of a candidate = estimated rows of the MV scan plus estimated rows of
each compensation operator above it. Ties are broken by fewer compensation
operators, then by the lexicographically smallest MV name.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mv_rewrite.plan_nodes import OperatorNode, Scan
from mv_rewrite.rewriter import compensation_operator_count

if TYPE_CHECKING:
    from mv_rewrite.catalog import MaterializedView
    from mv_rewrite.collaborators import StatisticsProvider
    from mv_rewrite.freshness import FreshnessVerdict


@dataclass
class RewriteCandidate:
    """An MV that passed matching, aggregate and freshness checks for one query sub-tree."""
    mv: "MaterializedView"
    path: tuple[int, ...]
    node: OperatorNode
    replacement: OperatorNode  # MV scan plus compensation
    freshness: "FreshnessVerdict"
    cost: float = 0.0
    compensation_ops: int = 0
    regroup: bool = False

    def sort_key(self) -> tuple[float, int, str]:
        return (self.cost, self.compensation_ops, self.mv.name)


@dataclass
class RankResult:
    """Winner first, then losers in rank order."""
    ranked: list[RewriteCandidate] = field(default_factory=list)

    @property
    def winner(self) -> RewriteCandidate | None:
        return self.ranked[0] if self.ranked else None

    @property
    def losers(self) -> list[RewriteCandidate]:
        return self.ranked[1:]


def estimate_cost(replacement: OperatorNode, statistics: "StatisticsProvider") -> float:
    """Sum of estimated rows over the MV scan and every compensation operator."""
    cost = 0.0
    node = replacement
    while True:
        cost += statistics.estimate_row_count(node)
        if isinstance(node, Scan):
            return cost
        node = node.child


def rank_candidates(
    candidates: list[RewriteCandidate],
    statistics: "StatisticsProvider",
) -> RankResult:
    """
    Cost every candidate and sort them.

    Args:
        candidates: Candidates in any order
        statistics: Row-count estimates

    Returns:
        RankResult with the cheapest candidate first
    """
    for candidate in candidates:
        candidate.cost = estimate_cost(candidate.replacement, statistics)
        candidate.compensation_ops = compensation_operator_count(candidate.replacement)
    return RankResult(ranked=sorted(candidates, key=RewriteCandidate.sort_key))
