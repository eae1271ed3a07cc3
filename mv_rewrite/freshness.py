"""
Freshness Validator: is the MV's data consistent with the partitions the
replaced sub-tree would read?

For each partition read (sorted by partition id):
1. missing from the catalog snapshot -> CatalogConsistencyError (fatal)
2. not in the MV's captured map -> stale, cannot be compensated
3. oracle version below the captured one -> CatalogConsistencyError (fatal)
4. lag = current - captured; lag above the tolerance -> stale

Default tolerance is 0 (strict freshness). Only partition versions are
consulted; row-count statistics never decide staleness.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mv_rewrite.errors import CatalogConsistencyError
from mv_rewrite.plan_nodes import OperatorNode

if TYPE_CHECKING:
    from mv_rewrite.catalog import MaterializedView, MvCatalogSnapshot
    from mv_rewrite.collaborators import PartitionVersionOracle


logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreshnessVerdict:
    """Freshness of one MV for one query sub-tree."""
    fresh: bool
    max_lag: int = 0
    partitions_checked: int = 0
    reason: str = ""


def check_freshness(
    node: OperatorNode,
    mv: "MaterializedView",
    snapshot: "MvCatalogSnapshot",
    versions: "PartitionVersionOracle",
    tolerance: int | None = None,
) -> FreshnessVerdict:
    """
    Validate the MV against every partition node reads.

    Args:
        node: Matched query sub-tree
        mv: Candidate MV
        snapshot: Catalog snapshot of this compilation
        versions: Partition version oracle
        tolerance: Accepted version lag per partition (None = strict)

    Returns:
        FreshnessVerdict; reason names the first offending partition and
        its version delta

    Raises:
        CatalogConsistencyError: partition missing from the catalog, or a
            version lower than the captured one
    """
    allowed = tolerance or 0
    if allowed < 0:
        raise ValueError(f"Staleness tolerance must be >= 0, got {tolerance}")

    partitions = snapshot.partitions_read(node)
    max_lag = 0
    for partition in partitions:
        pid = partition.partition_id
        captured = mv.captured_versions.get(pid)
        current = versions.current_version(partition)
        if captured is None:
            return FreshnessVerdict(
                fresh=False,
                partitions_checked=len(partitions),
                reason=f"partition {pid} (version {current}) is not covered by MV {mv.name}",
            )
        if current < captured:
            raise CatalogConsistencyError(
                f"Partition {pid} version went backwards: captured {captured}, current {current}"
            )
        lag = current - captured
        max_lag = max(max_lag, lag)
        if lag > allowed:
            return FreshnessVerdict(
                fresh=False,
                max_lag=lag,
                partitions_checked=len(partitions),
                reason=(
                    f"partition {pid} is stale by {lag} version(s) "
                    f"(captured {captured}, current {current}, tolerance {allowed})"
                ),
            )

    logger.debug("MV %s fresh over %d partition(s), max lag %d", mv.name, len(partitions), max_lag)
    return FreshnessVerdict(fresh=True, max_lag=max_lag, partitions_checked=len(partitions))
