"""
Collaborators: interfaces of the services the rewrite pipeline consumes.

- StatisticsProvider: row-count estimates (cost input only)
- PartitionVersionOracle: current committed version of a partition

Both are fast, already-cached reads supplied by the calling compiler. The
mapping-backed implementations here are what the CLI and the tests use.
"""

from typing import TYPE_CHECKING, Mapping, Protocol

from mv_rewrite.errors import CatalogConsistencyError
from mv_rewrite.plan_nodes import (
    Aggregate,
    Filter,
    Join,
    JoinKind,
    OperatorNode,
    Project,
    Scan,
    conjuncts,
)

if TYPE_CHECKING:
    from mv_rewrite.catalog import Partition


class StatisticsProvider(Protocol):
    """Source of row-count estimates."""

    def estimate_row_count(self, node: OperatorNode) -> float:
        ...


class PartitionVersionOracle(Protocol):
    """Source of current partition versions."""

    def current_version(self, partition: "Partition") -> int:
        ...


class MappingVersionOracle:
    """
    Partition versions held in a dict keyed by partition_id ("table.partition").

    bump() simulates a committed mutation (versions only grow).
    """

    def __init__(self, versions: Mapping[str, int] | None = None):
        self._versions: dict[str, int] = dict(versions or {})

    def current_version(self, partition: "Partition") -> int:
        """
        Raises:
            CatalogConsistencyError: if the partition is unknown to the oracle
        """
        version = self._versions.get(partition.partition_id)
        if version is None:
            raise CatalogConsistencyError(f"No version known for partition {partition.partition_id}")
        return version

    def set_version(self, partition_id: str, version: int) -> None:
        """Set the version of a partition (must not go backwards)."""
        current = self._versions.get(partition_id)
        if current is not None and version < current:
            raise CatalogConsistencyError(
                f"Partition {partition_id} version would go backwards: {current} -> {version}"
            )
        self._versions[partition_id] = version

    def bump(self, partition_id: str, by: int = 1) -> int:
        """Record a committed mutation and return the new version."""
        new_version = self._versions.get(partition_id, 0) + by
        self._versions[partition_id] = new_version
        return new_version

    def to_dict(self) -> dict[str, int]:
        """Copy of the version map."""
        return dict(self._versions)


class MappingStatistics:
    """
    Row-count estimates from per-relation row counts.

    Scans read the row count of their table (an MV scan uses the MV name);
    the remaining operators apply fixed textbook factors.

    Args:
        row_counts: Rows per table / MV name
        default_row_count: Used for relations missing from row_counts
        filter_selectivity: Selectivity per Filter conjunct
        group_reduction: Output/input ratio of a grouped Aggregate
    """

    def __init__(
        self,
        row_counts: Mapping[str, float] | None = None,
        default_row_count: float = 1000.0,
        filter_selectivity: float = 0.33,
        group_reduction: float = 0.1,
    ):
        self.row_counts = {k.lower(): float(v) for k, v in (row_counts or {}).items()}
        self.default_row_count = default_row_count
        self.filter_selectivity = filter_selectivity
        self.group_reduction = group_reduction

    def estimate_row_count(self, node: OperatorNode) -> float:
        """Estimate rows produced by node."""
        if isinstance(node, Scan):
            return self.row_counts.get(node.table.lower(), self.default_row_count)
        if isinstance(node, Filter):
            child = self.estimate_row_count(node.child)
            return child * self.filter_selectivity ** max(1, len(conjuncts(node.predicate)))
        if isinstance(node, Project):
            return self.estimate_row_count(node.child)
        if isinstance(node, Aggregate):
            child = self.estimate_row_count(node.child)
            if not node.group_keys:
                return 1.0
            return max(1.0, child * self.group_reduction)
        if isinstance(node, Join):
            left = self.estimate_row_count(node.left)
            right = self.estimate_row_count(node.right)
            if node.join_kind == JoinKind.CROSS:
                return left * right
            if node.join_kind == JoinKind.LEFT:
                return left
            if node.join_kind == JoinKind.FULL:
                return left + right
            return max(left, right)
        raise TypeError(f"Not an operator: {node!r}")
