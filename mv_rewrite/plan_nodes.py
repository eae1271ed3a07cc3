"""
Plan Nodes: the operator and expression model shared by every stage.

Both sets are closed tagged variants:
- Expressions: ColumnRef / Literal / FunctionCall / BinaryOp (tag: ExprKind)
- Operators: Scan / Filter / Project / Aggregate / Join (tag: OperatorKind)

All nodes are frozen dataclasses. A plan is a tree: every node owns its
children, and rewriting a plan always builds new nodes along the changed
path instead of mutating the old ones.

Column naming:
- Scan with alias "s" outputs ColumnRef("s", <column>)
- Project / Aggregate output ColumnRef(<qualifier>, <name>), qualifier "" by default
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable, ClassVar, Iterator, Union

from mv_rewrite.errors import PlanCycleError

if TYPE_CHECKING:
    from mv_rewrite.canonicalizer import EquivalenceClasses


# ============================================================================
# Expressions
# ============================================================================

class ExprKind(Enum):
    """Tag of an expression variant."""
    COLUMN_REF = "column_ref"
    LITERAL = "literal"
    FUNCTION_CALL = "function_call"
    BINARY_OP = "binary_op"


@dataclass(frozen=True)
class ColumnRef:
    """Reference to a column produced by a child operator."""
    table: str  # Scan alias, or output qualifier ("" for block outputs)
    column: str
    eq_class: int | None = field(default=None, compare=False, repr=False)
    kind: ClassVar[ExprKind] = ExprKind.COLUMN_REF


@dataclass(frozen=True)
class Literal:
    """
    A constant value.

    type_name is part of equality so that True and 1 (equal in Python)
    never compare equal as literals.
    """
    value: object
    type_name: str = ""
    eq_class: int | None = field(default=None, compare=False, repr=False)
    kind: ClassVar[ExprKind] = ExprKind.LITERAL

    def __post_init__(self):
        if not self.type_name:
            object.__setattr__(self, "type_name", type(self.value).__name__)


@dataclass(frozen=True)
class FunctionCall:
    """Scalar or aggregate function call; also n-ary AND/OR/+/* after canonicalization."""
    name: str  # lowercase
    args: tuple["Expression", ...] = ()
    distinct: bool = False
    eq_class: int | None = field(default=None, compare=False, repr=False)
    kind: ClassVar[ExprKind] = ExprKind.FUNCTION_CALL


@dataclass(frozen=True)
class BinaryOp:
    """Binary operator: arithmetic, comparison or boolean connective."""
    op: str  # "+", "-", "*", "/", "=", "<>", "<", "<=", ">", ">=", "and", "or"
    left: "Expression"
    right: "Expression"
    eq_class: int | None = field(default=None, compare=False, repr=False)
    kind: ClassVar[ExprKind] = ExprKind.BINARY_OP


Expression = Union[ColumnRef, Literal, FunctionCall, BinaryOp]

AGGREGATE_FUNCTIONS = frozenset({"sum", "count", "min", "max", "avg"})
COMPARISON_OPS = frozenset({"=", "<>", "<", "<=", ">", ">="})

TRUE = Literal(True)
FALSE = Literal(False)


def is_aggregate_call(expr: Expression) -> bool:
    """Check if expression is a call to an aggregate function."""
    return isinstance(expr, FunctionCall) and expr.name in AGGREGATE_FUNCTIONS


def literal_key(lit: Literal) -> str:
    """Stable textual key for a literal value."""
    value = lit.value
    if isinstance(value, Decimal):
        return f"lit:{lit.type_name}:{value.normalize()}"
    return f"lit:{lit.type_name}:{value!r}"


def expr_key(expr: Expression) -> str:
    """
    Structural key of an expression.

    Two expressions have the same key iff they are structurally identical
    (eq_class tags are ignored). Keys are plain strings so they sort
    deterministically.
    """
    if isinstance(expr, ColumnRef):
        return f"col:{expr.table}.{expr.column}"
    if isinstance(expr, Literal):
        return literal_key(expr)
    if isinstance(expr, FunctionCall):
        inner = ",".join(expr_key(a) for a in expr.args)
        marker = "distinct " if expr.distinct else ""
        return f"fn:{expr.name}({marker}{inner})"
    if isinstance(expr, BinaryOp):
        return f"op:{expr.op}({expr_key(expr.left)},{expr_key(expr.right)})"
    raise TypeError(f"Not an expression: {expr!r}")


def expr_children(expr: Expression) -> tuple[Expression, ...]:
    """Direct sub-expressions."""
    if isinstance(expr, FunctionCall):
        return expr.args
    if isinstance(expr, BinaryOp):
        return (expr.left, expr.right)
    return ()


def transform_expr(
    expr: Expression,
    fn: Callable[[Expression], Expression],
) -> Expression:
    """
    Rebuild an expression bottom-up, applying fn to every node.

    Args:
        expr: Root expression
        fn: Called on each node after its children were transformed

    Returns:
        New expression (input is never modified)
    """
    if isinstance(expr, FunctionCall):
        expr = replace(expr, args=tuple(transform_expr(a, fn) for a in expr.args))
    elif isinstance(expr, BinaryOp):
        expr = replace(
            expr,
            left=transform_expr(expr.left, fn),
            right=transform_expr(expr.right, fn),
        )
    return fn(expr)


def column_refs(expr: Expression) -> list[ColumnRef]:
    """All column references in an expression (pre-order, duplicates kept)."""
    refs: list[ColumnRef] = []
    stack = [expr]
    while stack:
        current = stack.pop()
        if isinstance(current, ColumnRef):
            refs.append(current)
        else:
            stack.extend(reversed(expr_children(current)))
    return refs


def contains_aggregate(expr: Expression) -> bool:
    """Check if any sub-expression is an aggregate call."""
    if is_aggregate_call(expr):
        return True
    return any(contains_aggregate(c) for c in expr_children(expr))


def conjuncts(expr: Expression | None) -> list[Expression]:
    """Split a predicate into its top-level AND operands."""
    if expr is None:
        return []
    if isinstance(expr, FunctionCall) and expr.name == "and":
        result: list[Expression] = []
        for arg in expr.args:
            result.extend(conjuncts(arg))
        return result
    if isinstance(expr, BinaryOp) and expr.op == "and":
        return conjuncts(expr.left) + conjuncts(expr.right)
    if expr == TRUE:
        return []
    return [expr]


def make_conjunction(parts: list[Expression]) -> Expression | None:
    """Combine predicates with AND (None for an empty list)."""
    if not parts:
        return None
    if len(parts) == 1:
        return parts[0]
    return FunctionCall("and", tuple(parts))


# ============================================================================
# Operators
# ============================================================================

class OperatorKind(Enum):
    """Tag of an operator variant."""
    SCAN = "scan"
    FILTER = "filter"
    PROJECT = "project"
    AGGREGATE = "aggregate"
    JOIN = "join"


class JoinKind(Enum):
    """Join semantics."""
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"
    CROSS = "cross"

    @property
    def is_commutative(self) -> bool:
        """Inputs of INNER/CROSS/FULL joins may be swapped."""
        return self in (JoinKind.INNER, JoinKind.CROSS, JoinKind.FULL)


@dataclass(frozen=True)
class NamedExpr:
    """An output column: expression plus the name it is exposed under."""
    name: str
    expr: Expression
    qualifier: str = ""

    def output_ref(self) -> ColumnRef:
        """ColumnRef used by parent operators to read this output."""
        return ColumnRef(self.qualifier, self.name)


@dataclass(frozen=True)
class Scan:
    """Read of a base table (or of a materialized view after rewrite)."""
    table: str
    alias: str
    columns: tuple[str, ...]
    partitions: tuple[str, ...] | None = None  # None = every partition of the table
    classes: "EquivalenceClasses | None" = field(default=None, compare=False, repr=False)
    kind: ClassVar[OperatorKind] = OperatorKind.SCAN


@dataclass(frozen=True)
class Filter:
    """Keep rows for which predicate is true."""
    predicate: Expression
    child: "OperatorNode"
    classes: "EquivalenceClasses | None" = field(default=None, compare=False, repr=False)
    kind: ClassVar[OperatorKind] = OperatorKind.FILTER


@dataclass(frozen=True)
class Project:
    """Compute output columns from the child's columns."""
    exprs: tuple[NamedExpr, ...]
    child: "OperatorNode"
    classes: "EquivalenceClasses | None" = field(default=None, compare=False, repr=False)
    kind: ClassVar[OperatorKind] = OperatorKind.PROJECT


@dataclass(frozen=True)
class Aggregate:
    """Group rows by group_keys and evaluate aggregate calls per group."""
    group_keys: tuple[NamedExpr, ...]
    aggregates: tuple[NamedExpr, ...]
    child: "OperatorNode"
    classes: "EquivalenceClasses | None" = field(default=None, compare=False, repr=False)
    kind: ClassVar[OperatorKind] = OperatorKind.AGGREGATE


@dataclass(frozen=True)
class Join:
    """Join of two inputs."""
    join_kind: JoinKind
    condition: Expression | None
    left: "OperatorNode"
    right: "OperatorNode"
    commuted: bool = field(default=False, compare=False)  # set when canonicalization swapped inputs
    classes: "EquivalenceClasses | None" = field(default=None, compare=False, repr=False)
    kind: ClassVar[OperatorKind] = OperatorKind.JOIN


OperatorNode = Union[Scan, Filter, Project, Aggregate, Join]


def children(node: OperatorNode) -> tuple[OperatorNode, ...]:
    """Direct child operators."""
    if isinstance(node, Scan):
        return ()
    if isinstance(node, Join):
        return (node.left, node.right)
    return (node.child,)


def with_children(node: OperatorNode, new_children: tuple[OperatorNode, ...]) -> OperatorNode:
    """Copy of node with its children replaced."""
    if isinstance(node, Scan):
        return node
    if isinstance(node, Join):
        left, right = new_children
        return replace(node, left=left, right=right)
    (child,) = new_children
    return replace(node, child=child)


def node_expressions(node: OperatorNode) -> list[Expression]:
    """Expressions owned by the operator itself (not by its children)."""
    if isinstance(node, Filter):
        return [node.predicate]
    if isinstance(node, Project):
        return [ne.expr for ne in node.exprs]
    if isinstance(node, Aggregate):
        return [ne.expr for ne in node.group_keys] + [ne.expr for ne in node.aggregates]
    if isinstance(node, Join):
        return [node.condition] if node.condition is not None else []
    return []


def output_columns(node: OperatorNode) -> tuple[ColumnRef, ...]:
    """Columns the operator exposes to its parent, in order."""
    if isinstance(node, Scan):
        return tuple(ColumnRef(node.alias, c) for c in node.columns)
    if isinstance(node, Filter):
        return output_columns(node.child)
    if isinstance(node, Project):
        return tuple(ne.output_ref() for ne in node.exprs)
    if isinstance(node, Aggregate):
        return tuple(ne.output_ref() for ne in node.group_keys + node.aggregates)
    return output_columns(node.left) + output_columns(node.right)


def check_tree(root: OperatorNode) -> None:
    """
    Verify that root is a tree: no node is its own ancestor.

    Raises:
        PlanCycleError: if a cycle is found
    """
    on_path: set[int] = set()

    def visit(node: OperatorNode, depth: int) -> None:
        if id(node) in on_path:
            raise PlanCycleError(
                f"Operator tree contains a cycle at {type(node).__name__} (depth {depth})"
            )
        on_path.add(id(node))
        for child in children(node):
            visit(child, depth + 1)
        on_path.discard(id(node))

    visit(root, 0)


def walk(root: OperatorNode) -> Iterator[tuple[tuple[int, ...], OperatorNode]]:
    """Pre-order traversal yielding (path, node); path holds child indexes from root."""
    stack: list[tuple[tuple[int, ...], OperatorNode]] = [((), root)]
    while stack:
        path, node = stack.pop()
        yield path, node
        kids = children(node)
        for i in range(len(kids) - 1, -1, -1):
            stack.append((path + (i,), kids[i]))


def node_at(root: OperatorNode, path: tuple[int, ...]) -> OperatorNode:
    """Follow a child-index path from root."""
    node = root
    for i in path:
        node = children(node)[i]
    return node


def replace_at(
    root: OperatorNode,
    path: tuple[int, ...],
    new_node: OperatorNode,
) -> OperatorNode:
    """Return a new tree with the node at path replaced; root is left untouched."""
    if not path:
        return new_node
    kids = list(children(root))
    kids[path[0]] = replace_at(kids[path[0]], path[1:], new_node)
    return with_children(root, tuple(kids))


def scans(root: OperatorNode) -> list[Scan]:
    """All Scan leaves, left to right."""
    return [node for _, node in walk(root) if isinstance(node, Scan)]


def operator_count(root: OperatorNode) -> int:
    """Number of operators in the tree."""
    return sum(1 for _ in walk(root))
