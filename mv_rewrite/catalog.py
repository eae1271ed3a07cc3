"""
MV Catalog: base tables, partitions and materialized views.

Readers work on an immutable MvCatalogSnapshot; MvCatalog is the publisher
that builds a new snapshot for every mutation and swaps it in atomically.

Catalog JSON format (load_catalog):

    {
      "tables": {
        "t": {"columns": ["a", "b"], "partitions": {"p1": 3, "p2": 1}}
      },
      "views": {
        "mv1": {"sql": "SELECT ...", "captured_versions": {"t.p1": 3}}
      },
      "row_counts": {"t": 100000, "mv1": 120}
    }

- columns: list of names, or dict keyed by name (values ignored)
- partitions: dict name -> current version, or list of names (version 1);
  a table without partitions gets a single partition "default"
- captured_versions: optional; omitted means "captured at load time"
"""

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

from mv_rewrite.canonicalizer import canonicalize
from mv_rewrite.errors import CatalogConsistencyError
from mv_rewrite.plan_nodes import (
    Aggregate,
    NamedExpr,
    OperatorNode,
    output_columns,
    scans,
)

if TYPE_CHECKING:
    from mv_rewrite.collaborators import (
        MappingStatistics,
        MappingVersionOracle,
        PartitionVersionOracle,
    )


logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_PARTITION = "default"


@dataclass(frozen=True)
class Partition:
    """A partition of a base table, identified by (table, name)."""
    table: str
    name: str

    @property
    def partition_id(self) -> str:
        """Stable identity used as key in captured-version maps: "table.name"."""
        return f"{self.table}.{self.name}"


@dataclass(frozen=True)
class BaseTable:
    """A base table: schema plus its partitions."""
    name: str
    columns: tuple[str, ...]
    partitions: tuple[Partition, ...] = ()

    def partition(self, name: str) -> Partition | None:
        """Partition by name, None if the table has no such partition."""
        for p in self.partitions:
            if p.name == name:
                return p
        return None


def make_table(name: str, columns: list[str] | tuple[str, ...], partitions: list[str] | None = None) -> BaseTable:
    """
    Build a BaseTable with lowercase names.

    Args:
        name: Table name
        columns: Column names
        partitions: Partition names; None gives the single "default" partition
    """
    table = name.lower()
    names = partitions if partitions else [DEFAULT_PARTITION]
    return BaseTable(
        name=table,
        columns=tuple(c.lower() for c in columns),
        partitions=tuple(Partition(table, p) for p in names),
    )


def mv_output_name(table: str, column: str) -> str:
    """Column name in the MV for a definition output column."""
    return f"{table}__{column}" if table else column


@dataclass(frozen=True)
class MaterializedView:
    """
    A registered materialized view.

    output maps each column of the stored MV to the definition output it
    holds: NamedExpr(mv column name, ColumnRef in the definition namespace).
    """
    name: str
    definition: OperatorNode
    output: tuple[NamedExpr, ...]
    captured_versions: Mapping[str, int] = field(default_factory=dict, hash=False)
    sql: str = ""
    canonical_definition: OperatorNode | None = field(default=None, compare=False, repr=False)

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(ne.name for ne in self.output)

    @property
    def is_aggregate(self) -> bool:
        return isinstance(self.canonical_definition, Aggregate)

    @property
    def group_keys(self) -> tuple[NamedExpr, ...]:
        """Grouping keys of an aggregate MV (empty otherwise)."""
        if isinstance(self.canonical_definition, Aggregate):
            return self.canonical_definition.group_keys
        return ()

    @property
    def aggregates(self) -> tuple[NamedExpr, ...]:
        """Aggregate specs of an aggregate MV (empty otherwise)."""
        if isinstance(self.canonical_definition, Aggregate):
            return self.canonical_definition.aggregates
        return ()


def make_view(
    name: str,
    definition: OperatorNode,
    captured_versions: Mapping[str, int],
    sql: str = "",
) -> MaterializedView:
    """Build a MaterializedView, computing its canonical form and output columns."""
    canonical = canonicalize(definition)
    output = tuple(
        NamedExpr(mv_output_name(ref.table, ref.column), ref)
        for ref in output_columns(definition)
    )
    names = [ne.name for ne in output]
    if len(set(names)) != len(names):
        raise CatalogConsistencyError(f"MV {name} has duplicate output columns: {names}")
    return MaterializedView(
        name=name.lower(),
        definition=definition,
        output=output,
        captured_versions=MappingProxyType(dict(captured_versions)),
        sql=sql,
        canonical_definition=canonical,
    )


@dataclass(frozen=True)
class MvCatalogSnapshot:
    """
    Immutable view of the catalog at one version.

    A compilation reads exactly one snapshot for its whole duration.
    """
    version: int
    tables: Mapping[str, BaseTable] = field(default_factory=dict, hash=False)
    views: Mapping[str, MaterializedView] = field(default_factory=dict, hash=False)

    @property
    def view_names(self) -> list[str]:
        """MV names in lexicographic order."""
        return sorted(self.views)

    def table(self, name: str) -> BaseTable:
        """
        Raises:
            CatalogConsistencyError: if the table is not in the snapshot
        """
        table = self.tables.get(name)
        if table is None:
            raise CatalogConsistencyError(f"Table {name} is not in catalog snapshot {self.version}")
        return table

    def resolve_partition(self, table_name: str, partition_name: str) -> Partition:
        """
        Raises:
            CatalogConsistencyError: if the table or partition is missing
        """
        partition = self.table(table_name).partition(partition_name)
        if partition is None:
            raise CatalogConsistencyError(
                f"Partition {table_name}.{partition_name} is not in catalog snapshot {self.version}"
            )
        return partition

    def partitions_read(self, plan: OperatorNode) -> list[Partition]:
        """Partitions read by every Scan of plan (pruned list or the whole table), sorted by id."""
        found: dict[str, Partition] = {}
        for scan in scans(plan):
            table = self.table(scan.table)
            if scan.partitions is None:
                parts = list(table.partitions)
            else:
                parts = [self.resolve_partition(scan.table, p) for p in scan.partitions]
            for p in parts:
                found[p.partition_id] = p
        return [found[k] for k in sorted(found)]


class MvCatalog:
    """
    Publisher of catalog snapshots.

    Every mutation builds a new snapshot under the lock and swaps the
    reference; published snapshots are never modified.

    Args:
        versions: Partition version oracle, read when capturing versions
        dialect: sqlglot dialect of view definitions given as SQL
    """

    def __init__(self, versions: "PartitionVersionOracle", dialect: str = "spark"):
        self.versions = versions
        self.dialect = dialect
        self._lock = threading.Lock()
        self._snapshot = MvCatalogSnapshot(version=0, tables=MappingProxyType({}), views=MappingProxyType({}))

    def snapshot(self) -> MvCatalogSnapshot:
        """Current snapshot."""
        return self._snapshot

    def _publish(
        self,
        tables: dict[str, BaseTable] | None = None,
        views: dict[str, MaterializedView] | None = None,
    ) -> MvCatalogSnapshot:
        current = self._snapshot
        self._snapshot = MvCatalogSnapshot(
            version=current.version + 1,
            tables=MappingProxyType(dict(current.tables if tables is None else tables)),
            views=MappingProxyType(dict(current.views if views is None else views)),
        )
        logger.debug("Published catalog snapshot %d", self._snapshot.version)
        return self._snapshot

    def _capture(self, snapshot: MvCatalogSnapshot, definition: OperatorNode) -> dict[str, int]:
        return {
            p.partition_id: self.versions.current_version(p)
            for p in snapshot.partitions_read(definition)
        }

    def register_table(self, table: BaseTable) -> MvCatalogSnapshot:
        """Add or replace a base table."""
        with self._lock:
            tables = dict(self._snapshot.tables)
            tables[table.name] = table
            return self._publish(tables=tables)

    def register_view(
        self,
        name: str,
        definition: str | OperatorNode,
        captured_versions: Mapping[str, int] | None = None,
    ) -> MaterializedView:
        """
        Register an MV; by default captures the current versions of every partition it reads.

        Args:
            name: MV name
            definition: Defining SELECT (SQL text) or plan
            captured_versions: Explicit captured map (e.g. restored from storage)

        Raises:
            PlanBuildError: if definition SQL cannot be built
            CatalogConsistencyError: if the definition reads unknown tables/partitions
        """
        from mv_rewrite.plan_builder import build_plan

        with self._lock:
            snapshot = self._snapshot
            sql = ""
            if isinstance(definition, str):
                sql = definition
                definition = build_plan(sql, snapshot.tables, dialect=self.dialect)
            if captured_versions is None:
                captured_versions = self._capture(snapshot, definition)
            else:
                snapshot.partitions_read(definition)
            view = make_view(name, definition, captured_versions, sql=sql)
            views = dict(snapshot.views)
            views[view.name] = view
            self._publish(views=views)
        logger.info("Registered MV %s over %d partitions", view.name, len(view.captured_versions))
        return view

    def drop_view(self, name: str) -> MvCatalogSnapshot:
        """Retire an MV. Unknown names raise KeyError."""
        with self._lock:
            views = dict(self._snapshot.views)
            del views[name.lower()]
            return self._publish(views=views)

    def refresh_view(self, name: str, captured_versions: Mapping[str, int] | None = None) -> MaterializedView:
        """
        Record a completed refresh of an MV.

        Args:
            name: MV name
            captured_versions: Versions the refresh read; default is the
                               current version of every partition the MV reads
        """
        with self._lock:
            snapshot = self._snapshot
            view = snapshot.views[name.lower()]
            if captured_versions is None:
                captured_versions = self._capture(snapshot, view.definition)
            refreshed = replace(view, captured_versions=MappingProxyType(dict(captured_versions)))
            views = dict(snapshot.views)
            views[refreshed.name] = refreshed
            self._publish(views=views)
        logger.info("Refreshed MV %s", refreshed.name)
        return refreshed


# ============================================================================
# JSON loading
# ============================================================================

@dataclass
class CatalogLoadResult:
    """Everything loaded from a catalog JSON file."""
    catalog: MvCatalog
    versions: "MappingVersionOracle"
    statistics: "MappingStatistics"
    warnings: list[str] = field(default_factory=list)


def _parse_columns(table_name: str, cols_data: object) -> list[str]:
    if isinstance(cols_data, dict):
        return list(cols_data.keys())
    if isinstance(cols_data, list):
        return [str(c) for c in cols_data]
    raise ValueError(f"Table {table_name}: 'columns' must be a list or an object")


def _parse_partitions(table_name: str, parts_data: object) -> dict[str, int]:
    if parts_data is None:
        return {DEFAULT_PARTITION: 1}
    if isinstance(parts_data, dict):
        return {str(k).lower(): int(v) for k, v in parts_data.items()}
    if isinstance(parts_data, list):
        return {str(p).lower(): 1 for p in parts_data}
    raise ValueError(f"Table {table_name}: 'partitions' must be a list or an object")


def load_catalog(catalog_path: Path, dialect: str = "spark") -> CatalogLoadResult:
    """
    Load tables, views, partition versions and row counts from JSON.

    Views that fail to build are skipped with a warning; malformed table
    entries raise ValueError.

    Args:
        catalog_path: Path to the catalog JSON file
        dialect: sqlglot dialect of the view definitions

    Returns:
        CatalogLoadResult
    """
    from mv_rewrite.collaborators import MappingStatistics, MappingVersionOracle
    from mv_rewrite.errors import PlanBuildError

    content = json.loads(Path(catalog_path).read_text(encoding="utf-8"))
    if not isinstance(content, dict):
        raise ValueError(f"{catalog_path}: top level must be an object")

    warnings: list[str] = []
    versions = MappingVersionOracle()
    catalog = MvCatalog(versions, dialect=dialect)

    for table_name, table_data in content.get("tables", {}).items():
        if not isinstance(table_data, dict):
            raise ValueError(f"Table {table_name}: entry must be an object")
        columns = _parse_columns(table_name, table_data.get("columns", []))
        if not columns:
            raise ValueError(f"Table {table_name}: no columns")
        partitions = _parse_partitions(table_name, table_data.get("partitions"))
        table = make_table(table_name, columns, list(partitions))
        for part_name, version in partitions.items():
            versions.set_version(f"{table.name}.{part_name}", version)
        catalog.register_table(table)

    for view_name, view_data in content.get("views", {}).items():
        sql = view_data.get("sql") if isinstance(view_data, dict) else view_data
        if not isinstance(sql, str):
            raise ValueError(f"View {view_name}: missing 'sql'")
        captured = view_data.get("captured_versions") if isinstance(view_data, dict) else None
        try:
            catalog.register_view(view_name, sql, captured_versions=captured)
        except (PlanBuildError, CatalogConsistencyError) as e:
            warnings.append(f"View {view_name} skipped: {e}")
            logger.warning("View %s skipped: %s", view_name, e)

    statistics = MappingStatistics(content.get("row_counts", {}))
    return CatalogLoadResult(
        catalog=catalog,
        versions=versions,
        statistics=statistics,
        warnings=warnings,
    )
