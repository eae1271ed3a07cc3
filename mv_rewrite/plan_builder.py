"""
Plan Builder: turn a SQL SELECT into an operator tree.

Used to build MV definitions from their CREATE text, by the CLI, and by the
tests. One SELECT block becomes:

    Scan / Join  ->  Filter(WHERE)  ->  Aggregate  ->  Filter(HAVING)  ->  Project

Handles:
- Base tables and derived tables (subqueries in FROM/JOIN)
- INNER / LEFT / RIGHT / FULL / CROSS joins with ON, comma joins
- SELECT *, t.*, aliases, SELECT DISTINCT, GROUP BY ordinals
- SUM / COUNT / COUNT(*) / COUNT(DISTINCT) / AVG / MIN / MAX

The Project is omitted when the select list is exactly the Aggregate
output. ORDER BY has no operator here and is dropped with a warning.
Anything else unsupported (LIMIT, CTEs, subqueries in expressions, ...)
raises PlanBuildError.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Mapping

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError

from mv_rewrite.errors import PlanBuildError
from mv_rewrite.plan_nodes import (
    Aggregate,
    BinaryOp,
    ColumnRef,
    Expression,
    Filter,
    FunctionCall,
    Join,
    JoinKind,
    Literal,
    NamedExpr,
    OperatorNode,
    Project,
    Scan,
    expr_key,
)

if TYPE_CHECKING:
    from mv_rewrite.catalog import BaseTable


AGGREGATE_TYPES: dict[type, str] = {
    exp.Sum: "sum",
    exp.Count: "count",
    exp.Avg: "avg",
    exp.Min: "min",
    exp.Max: "max",
}

UNSUPPORTED_AGGREGATES = (
    exp.Stddev, exp.StddevPop, exp.StddevSamp,
    exp.Variance, exp.VariancePop,
)

BINARY_OPS: dict[type, str] = {
    exp.Add: "+",
    exp.Sub: "-",
    exp.Mul: "*",
    exp.Div: "/",
    exp.EQ: "=",
    exp.NEQ: "<>",
    exp.LT: "<",
    exp.LTE: "<=",
    exp.GT: ">",
    exp.GTE: ">=",
    exp.And: "and",
    exp.Or: "or",
}


@dataclass
class BuildResult:
    """Result of building a plan from SQL."""
    plan: OperatorNode
    sql: str
    warnings: list[str] = field(default_factory=list)


def _sanitize_name(text: str) -> str:
    """Turn SQL text into a plain column name: sum(salary) -> sum_salary."""
    name = re.sub(r"[^a-z0-9_]+", "_", text.lower()).strip("_")
    return name or "expr"


def _unique_name(name: str, taken: set[str]) -> str:
    """Suffix name with _1, _2, ... until it is not in taken; then reserve it."""
    candidate = name
    i = 1
    while candidate in taken:
        candidate = f"{name}_{i}"
        i += 1
    taken.add(candidate)
    return candidate


def _get_arg(node: exp.Expression, arg_type: type) -> exp.Expression | None:
    """Find a clause of a SELECT by node type (robust to arg-key renames)."""
    for value in node.args.values():
        if isinstance(value, arg_type):
            return value
    return None


def _has_aggregate(node: exp.Expression) -> bool:
    """Check if node is or contains an aggregate call."""
    return node.find(*AGGREGATE_TYPES.keys(), *UNSUPPORTED_AGGREGATES) is not None


class Scope:
    """
    Columns visible in a SELECT block, by qualifier.

    Base table with alias s: qualifier "s" -> its schema columns.
    Derived table with alias d: qualifier "d" -> the subquery's output names.
    """

    def __init__(self):
        self.columns: dict[str, list[str]] = {}

    def add(self, qualifier: str, columns: list[str]) -> None:
        if qualifier in self.columns:
            raise PlanBuildError(f"Duplicate table alias: {qualifier}")
        self.columns[qualifier] = list(columns)

    def merge(self, other: "Scope") -> None:
        for qualifier, cols in other.columns.items():
            self.add(qualifier, cols)

    def resolve(self, column: exp.Column) -> ColumnRef:
        """Resolve a (possibly unqualified) column to a ColumnRef."""
        name = column.name.lower()
        qualifier = (column.table or "").lower()
        if qualifier:
            cols = self.columns.get(qualifier)
            if cols is None:
                raise PlanBuildError(f"Unknown table alias: {qualifier}")
            if name not in cols:
                raise PlanBuildError(f"Unknown column: {qualifier}.{name}")
            return ColumnRef(qualifier, name)

        owners = [q for q, cols in self.columns.items() if name in cols]
        if not owners:
            raise PlanBuildError(f"Unknown column: {name}")
        if len(owners) > 1:
            raise PlanBuildError(f"Ambiguous column: {name} (in {', '.join(sorted(owners))})")
        return ColumnRef(owners[0], name)

    def star(self, qualifier: str | None = None) -> list[ColumnRef]:
        """Columns for * (all qualifiers) or q.*."""
        if qualifier:
            if qualifier not in self.columns:
                raise PlanBuildError(f"Unknown table alias: {qualifier}")
            return [ColumnRef(qualifier, c) for c in self.columns[qualifier]]
        return [ColumnRef(q, c) for q, cols in self.columns.items() for c in cols]


class _AggregateContext:
    """Collects group keys and aggregate calls of one aggregating block."""

    def __init__(self, group_keys: list[NamedExpr], qualifier: str, taken: set[str]):
        self.group_keys = group_keys
        self.qualifier = qualifier
        self.aggregates: list[NamedExpr] = []
        self._by_key: dict[str, NamedExpr] = {}
        self._taken = taken

    def key_ref(self, expr: Expression) -> ColumnRef | None:
        """Output ref of the group key structurally equal to expr."""
        key = expr_key(expr)
        for ne in self.group_keys:
            if expr_key(ne.expr) == key:
                return ne.output_ref()
        return None

    def register(self, call: FunctionCall, preferred_name: str) -> ColumnRef:
        """Register an aggregate call (deduplicated) and return its output ref."""
        key = expr_key(call)
        if key not in self._by_key:
            name = _unique_name(preferred_name, self._taken)
            ne = NamedExpr(name, call, self.qualifier)
            self._by_key[key] = ne
            self.aggregates.append(ne)
        return self._by_key[key].output_ref()


class PlanBuilder:
    """
    Builds operator trees from SQL text.

    Args:
        tables: Base tables by (lowercase) name, for schemas and SELECT *
        dialect: sqlglot dialect of the SQL text
    """

    def __init__(self, tables: Mapping[str, "BaseTable"], dialect: str = "spark"):
        self.tables = {name.lower(): table for name, table in tables.items()}
        self.dialect = dialect
        self.warnings: list[str] = []
        self._derived_counter = 0

    def build(self, sql: str) -> BuildResult:
        """
        Parse sql and build its plan.

        Raises:
            PlanBuildError: on parse errors or unsupported SQL
        """
        self.warnings = []
        self._derived_counter = 0
        try:
            ast = sqlglot.parse_one(sql, dialect=self.dialect)
        except ParseError as e:
            raise PlanBuildError(f"Parse error: {e}") from e

        if not isinstance(ast, exp.Select):
            raise PlanBuildError(f"Only a single SELECT is supported, got {type(ast).__name__}")

        plan, _ = self._build_select(ast, qualifier="")
        return BuildResult(plan=plan, sql=sql, warnings=list(self.warnings))

    # ------------------------------------------------------------------
    # SELECT blocks
    # ------------------------------------------------------------------

    def _build_select(self, select: exp.Select, qualifier: str) -> tuple[OperatorNode, list[str]]:
        """
        Build one SELECT block.

        Args:
            select: SELECT node
            qualifier: Qualifier for the block outputs ("" at top level,
                       derived-table alias otherwise)

        Returns:
            (plan, output column names)
        """
        if _get_arg(select, exp.With) is not None:
            raise PlanBuildError("WITH clauses are not supported")
        if _get_arg(select, exp.Order) is not None:
            self.warnings.append("ORDER BY ignored (no ordering operator)")
        if _get_arg(select, exp.Limit) is not None:
            raise PlanBuildError("LIMIT is not supported")

        plan, scope = self._build_from(select)

        where = _get_arg(select, exp.Where)
        if where is not None:
            if _has_aggregate(where.this):
                raise PlanBuildError("Aggregate in WHERE clause")
            predicate = self._convert(where.this, scope)
            plan = Filter(predicate=predicate, child=plan)

        group = _get_arg(select, exp.Group)
        having = _get_arg(select, exp.Having)
        items = list(select.expressions)
        is_distinct = bool(select.args.get("distinct"))

        if group is not None or having is not None or any(_has_aggregate(i) for i in items):
            if is_distinct:
                raise PlanBuildError("SELECT DISTINCT with aggregation is not supported")
            return self._build_aggregate_block(plan, scope, items, group, having, qualifier)

        named = self._plain_items(items, scope, qualifier)
        if is_distinct:
            # SELECT DISTINCT a, b == GROUP BY a, b with no aggregates
            keys = tuple(NamedExpr(ne.name, ne.expr, qualifier) for ne in named)
            return Aggregate(group_keys=keys, aggregates=(), child=plan), [ne.name for ne in named]
        return Project(exprs=tuple(named), child=plan), [ne.name for ne in named]

    def _plain_items(self, items: list[exp.Expression], scope: Scope, qualifier: str) -> list[NamedExpr]:
        """Select items of a non-aggregating block."""
        taken: set[str] = set()
        named: list[NamedExpr] = []
        for item in items:
            if isinstance(item, exp.Star):
                for ref in scope.star():
                    named.append(NamedExpr(_unique_name(ref.column, taken), ref, qualifier))
                continue
            if isinstance(item, exp.Column) and isinstance(item.this, exp.Star):
                for ref in scope.star((item.table or "").lower()):
                    named.append(NamedExpr(_unique_name(ref.column, taken), ref, qualifier))
                continue
            expr = self._convert(item.this if isinstance(item, exp.Alias) else item, scope)
            name = _unique_name(self._item_name(item), taken)
            named.append(NamedExpr(name, expr, qualifier))
        return named

    def _item_name(self, item: exp.Expression) -> str:
        """Output name of a select item."""
        if isinstance(item, exp.Alias):
            return item.alias.lower()
        if isinstance(item, exp.Column):
            return item.name.lower()
        return _sanitize_name(item.sql(dialect=self.dialect))

    def _build_aggregate_block(
        self,
        plan: OperatorNode,
        scope: Scope,
        items: list[exp.Expression],
        group: exp.Group | None,
        having: exp.Having | None,
        qualifier: str,
    ) -> tuple[OperatorNode, list[str]]:
        """Build Aggregate (+ HAVING Filter, + Project) over plan."""
        taken: set[str] = set()
        group_keys: list[NamedExpr] = []
        for key_node in (group.expressions if group is not None else []):
            # GROUP BY 1 refers to the first select item
            if isinstance(key_node, exp.Literal) and not key_node.is_string:
                index = int(key_node.this) - 1
                if not 0 <= index < len(items):
                    raise PlanBuildError(f"GROUP BY position out of range: {key_node.this}")
                key_node = items[index]
            name_source = key_node
            if isinstance(key_node, exp.Alias):
                key_node = key_node.this
            if _has_aggregate(key_node):
                raise PlanBuildError("Aggregate in GROUP BY clause")
            expr = self._convert(key_node, scope)
            if any(expr_key(expr) == expr_key(k.expr) for k in group_keys):
                continue
            name = self._key_name(name_source, expr, items)
            group_keys.append(NamedExpr(_unique_name(name, taken), expr, qualifier))

        ctx = _AggregateContext(group_keys, qualifier, taken)

        select_exprs: list[tuple[str, Expression]] = []
        for item in items:
            if isinstance(item, exp.Star) or (isinstance(item, exp.Column) and isinstance(item.this, exp.Star)):
                raise PlanBuildError("SELECT * in an aggregating block")
            node = item.this if isinstance(item, exp.Alias) else item
            preferred = item.alias.lower() if isinstance(item, exp.Alias) else None
            expr = self._convert_grouped(node, scope, ctx, preferred)
            select_exprs.append((self._item_name(item), expr))

        having_expr = None
        if having is not None:
            having_expr = self._convert_grouped(having.this, scope, ctx, None)

        aggregate = Aggregate(
            group_keys=tuple(group_keys),
            aggregates=tuple(ctx.aggregates),
            child=plan,
        )
        result: OperatorNode = aggregate
        if having_expr is not None:
            result = Filter(predicate=having_expr, child=result)

        outputs = [ne.output_ref() for ne in aggregate.group_keys + aggregate.aggregates]
        output_names = [ne.name for ne in aggregate.group_keys + aggregate.aggregates]
        identity = (
            [e for _, e in select_exprs] == outputs
            and [n for n, _ in select_exprs] == output_names
        )
        if identity:
            return result, output_names

        project_taken: set[str] = set()
        named = tuple(
            NamedExpr(_unique_name(name, project_taken), expr, qualifier)
            for name, expr in select_exprs
        )
        return Project(exprs=named, child=result), [ne.name for ne in named]

    def _key_name(self, node: exp.Expression, expr: Expression, items: list[exp.Expression]) -> str:
        """Name of a group key: select-list alias when the item is the key, else column/SQL name."""
        if isinstance(node, exp.Alias):
            return node.alias.lower()
        for item in items:
            if isinstance(item, exp.Alias) and item.this == node:
                return item.alias.lower()
        if isinstance(expr, ColumnRef):
            return expr.column
        return _sanitize_name(node.sql(dialect=self.dialect))

    def _convert_grouped(
        self,
        node: exp.Expression,
        scope: Scope,
        ctx: _AggregateContext,
        preferred_name: str | None,
    ) -> Expression:
        """Convert an expression evaluated after grouping (select item or HAVING)."""

        def intercept(n: exp.Expression) -> Expression | None:
            if type(n) in AGGREGATE_TYPES:
                call = self._convert_aggregate(n, scope)
                name = preferred_name if (preferred_name and n is node) else _sanitize_name(
                    n.sql(dialect=self.dialect)
                )
                return ctx.register(call, name)
            if isinstance(n, UNSUPPORTED_AGGREGATES):
                raise PlanBuildError(f"Unsupported aggregate: {n.sql(dialect=self.dialect)}")
            if _has_aggregate(n):
                return None
            plain = self._convert(n, scope)
            ref = ctx.key_ref(plain)
            if ref is not None:
                return ref
            if isinstance(n, exp.Column):
                raise PlanBuildError(f"Column {plain.table}.{plain.column} must appear in GROUP BY")
            if isinstance(plain, Literal):
                return plain
            return None

        return self._convert(node, scope, intercept)

    def _convert_aggregate(self, node: exp.Expression, scope: Scope) -> FunctionCall:
        """Convert an aggregate call; its argument is evaluated before grouping."""
        name = AGGREGATE_TYPES[type(node)]
        inner = node.this
        distinct = False
        if isinstance(inner, exp.Distinct):
            distinct = True
            if len(inner.expressions) != 1:
                raise PlanBuildError("Multi-column DISTINCT aggregates are not supported")
            inner = inner.expressions[0]
        if isinstance(inner, exp.Star) or inner is None:
            if name != "count":
                raise PlanBuildError(f"{name.upper()}(*) is not valid")
            return FunctionCall("count", ())
        if _has_aggregate(inner):
            raise PlanBuildError("Nested aggregates are not supported")
        return FunctionCall(name, (self._convert(inner, scope),), distinct=distinct)

    # ------------------------------------------------------------------
    # FROM / JOIN
    # ------------------------------------------------------------------

    def _build_from(self, select: exp.Select) -> tuple[OperatorNode, Scope]:
        from_clause = _get_arg(select, exp.From)
        if from_clause is None or from_clause.this is None:
            raise PlanBuildError("SELECT without FROM is not supported")

        plan, scope = self._build_source(from_clause.this)

        for join in select.args.get("joins") or []:
            right, right_scope = self._build_source(join.this)
            if join.args.get("using"):
                raise PlanBuildError("JOIN ... USING is not supported")
            combined = Scope()
            combined.merge(scope)
            combined.merge(right_scope)

            side = (join.side or "").upper()
            kind = (join.kind or "").upper()
            on = join.args.get("on")
            if side == "LEFT":
                join_kind = JoinKind.LEFT
            elif side == "RIGHT":
                join_kind = JoinKind.RIGHT
            elif side == "FULL":
                join_kind = JoinKind.FULL
            elif kind == "CROSS" or on is None:
                join_kind = JoinKind.CROSS
            else:
                join_kind = JoinKind.INNER

            condition = self._convert(on, combined) if on is not None else None
            if join_kind != JoinKind.CROSS and condition is None:
                raise PlanBuildError(f"{join_kind.value.upper()} JOIN without ON condition")
            plan = Join(join_kind=join_kind, condition=condition, left=plan, right=right)
            scope = combined

        return plan, scope

    def _build_source(self, node: exp.Expression) -> tuple[OperatorNode, Scope]:
        """Build a Scan for a base table or a sub-plan for a derived table."""
        scope = Scope()
        if isinstance(node, exp.Table):
            name = node.name.lower()
            table = self.tables.get(name)
            if table is None:
                raise PlanBuildError(f"Unknown table: {name}")
            alias = (node.alias or name).lower()
            scope.add(alias, list(table.columns))
            return Scan(table=name, alias=alias, columns=tuple(table.columns)), scope

        if isinstance(node, exp.Subquery):
            inner = node.this
            if not isinstance(inner, exp.Select):
                raise PlanBuildError("Only SELECT subqueries are supported in FROM")
            alias = (node.alias or "").lower()
            if not alias:
                self._derived_counter += 1
                alias = f"derived_{self._derived_counter}"
            plan, names = self._build_select(inner, qualifier=alias)
            scope.add(alias, names)
            return plan, scope

        raise PlanBuildError(f"Unsupported FROM source: {type(node).__name__}")

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _convert(
        self,
        node: exp.Expression,
        scope: Scope,
        intercept: Callable[[exp.Expression], Expression | None] | None = None,
    ) -> Expression:
        """
        Convert a sqlglot expression into a plan Expression.

        Args:
            node: sqlglot node
            scope: Visible columns
            intercept: Optional hook tried on every node first; a non-None
                       result replaces the structural conversion
        """
        if intercept is not None:
            hooked = intercept(node)
            if hooked is not None:
                return hooked

        def convert(child: exp.Expression) -> Expression:
            return self._convert(child, scope, intercept)

        if isinstance(node, exp.Paren):
            return convert(node.this)
        if isinstance(node, exp.Column):
            if isinstance(node.this, exp.Star):
                raise PlanBuildError("* is only allowed in the select list")
            return scope.resolve(node)
        if isinstance(node, exp.Literal):
            if node.is_string:
                return Literal(node.this)
            text = node.this
            try:
                return Literal(int(text))
            except ValueError:
                return Literal(Decimal(text))
        if isinstance(node, exp.Boolean):
            return Literal(bool(node.this))
        if isinstance(node, exp.Null):
            return Literal(None)
        if type(node) in BINARY_OPS:
            return BinaryOp(BINARY_OPS[type(node)], convert(node.left), convert(node.right))
        if isinstance(node, exp.Not):
            return FunctionCall("not", (convert(node.this),))
        if isinstance(node, exp.Neg):
            return FunctionCall("neg", (convert(node.this),))
        if type(node) in AGGREGATE_TYPES or isinstance(node, UNSUPPORTED_AGGREGATES):
            raise PlanBuildError(f"Aggregate not allowed here: {node.sql(dialect=self.dialect)}")
        if isinstance(node, (exp.Select, exp.Subquery, exp.Exists)):
            raise PlanBuildError("Subqueries in expressions are not supported")
        if isinstance(node, exp.Anonymous):
            return FunctionCall(str(node.this).lower(), tuple(convert(a) for a in node.expressions))
        if isinstance(node, exp.DataType):
            return Literal(node.sql(dialect=self.dialect).lower(), type_name="datatype")

        # Generic fallback: keep every argument in declaration order
        args: list[Expression] = []
        for key in node.arg_types:
            value = node.args.get(key)
            if value is None or value is False:
                continue
            values = value if isinstance(value, list) else [value]
            for v in values:
                if isinstance(v, exp.Expression):
                    args.append(convert(v))
                else:
                    args.append(Literal(str(v), type_name=f"arg:{key}"))
        return FunctionCall(node.key.lower(), tuple(args))


def build_plan(
    sql: str,
    tables: Mapping[str, "BaseTable"],
    dialect: str = "spark",
) -> OperatorNode:
    """
    Convenience wrapper: build the plan of a single SELECT.

    Args:
        sql: SELECT statement
        tables: Base tables by name
        dialect: sqlglot dialect

    Returns:
        Operator tree
    """
    return PlanBuilder(tables, dialect=dialect).build(sql).plan


def build_plan_with_warnings(
    sql: str,
    tables: Mapping[str, "BaseTable"],
    dialect: str = "spark",
) -> BuildResult:
    """Build a plan and keep the builder's warnings."""
    return PlanBuilder(tables, dialect=dialect).build(sql)
