"""
Shared fixtures: the employee table T, a department table and a catalog over them.
"""

import pytest

from mv_rewrite.catalog import BaseTable, MvCatalog, make_table
from mv_rewrite.collaborators import MappingStatistics, MappingVersionOracle
from mv_rewrite.plan_builder import build_plan


T_COLUMNS = ["time_col", "empid", "name", "deptno", "salary", "commission"]


@pytest.fixture
def t_table() -> BaseTable:
    """T(time_col, empid, name, deptno, salary, commission), two partitions."""
    return make_table("t", T_COLUMNS, ["p1", "p2"])


@pytest.fixture
def depts_table() -> BaseTable:
    """depts(deptno, dname), unpartitioned."""
    return make_table("depts", ["deptno", "dname"])


@pytest.fixture
def tables(t_table: BaseTable, depts_table: BaseTable) -> dict[str, BaseTable]:
    return {"t": t_table, "depts": depts_table}


@pytest.fixture
def versions() -> MappingVersionOracle:
    return MappingVersionOracle({"t.p1": 1, "t.p2": 1, "depts.default": 1})


@pytest.fixture
def catalog(versions: MappingVersionOracle, t_table: BaseTable, depts_table: BaseTable) -> MvCatalog:
    """Catalog with T and depts registered, no views."""
    cat = MvCatalog(versions)
    cat.register_table(t_table)
    cat.register_table(depts_table)
    return cat


@pytest.fixture
def statistics() -> MappingStatistics:
    return MappingStatistics({"t": 100000, "depts": 50})


@pytest.fixture
def build(tables):
    """Build a plan from SQL against the fixture tables."""

    def _build(sql: str):
        return build_plan(sql, tables)

    return _build
