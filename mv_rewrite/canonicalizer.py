"""
Canonicalizer: normalize an operator tree into a comparable form.

The query and the MV definition are written independently, so before they
can be compared structurally both are rewritten into one canonical shape:

1. Constant sub-expressions are folded to Literal
2. Associative chains (AND, OR, +, *) are flattened into one n-ary FunctionCall
3. Commutative operand lists are sorted by structural key; <, <=, >, >= are
   flipped so the smaller operand key is on the left
4. RIGHT joins become LEFT joins; INNER/CROSS/FULL join inputs are sorted
   (the swap is recorded on Join.commuted)
5. Each operator gets the EquivalenceClasses visible in its scope and every
   expression is tagged with an eq_class id

Canonicalization never fails: shapes it does not understand are left as-is.
Running it on an already canonical plan returns an equal plan.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Callable, Iterable

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
    conjuncts,
    expr_key,
    transform_expr,
)


ASSOCIATIVE_OPS = frozenset({"and", "or", "+", "*"})
SYMMETRIC_OPS = frozenset({"=", "<>"})
FLIPPED_OPS: dict[str, str] = {
    "<": ">",
    ">": "<",
    "<=": ">=",
    ">=": "<=",
}


# ============================================================================
# Equivalence classes
# ============================================================================

class EquivalenceClasses:
    """
    Expressions proven equal by column-equality predicates in scope.

    Union-find over structural keys. Only ColumnRef = ColumnRef conjuncts
    create classes; equalities against literals are handled by predicate
    implication instead.
    """

    def __init__(self, pairs: Iterable[tuple[Expression, Expression]] = ()):
        self._parent: dict[str, str] = {}
        self._exprs: dict[str, Expression] = {}
        for left, right in pairs:
            self.add_equality(left, right)

    def _find(self, key: str) -> str:
        root = key
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression
        while self._parent[key] != root:
            self._parent[key], key = root, self._parent[key]
        return root

    def add_equality(self, left: Expression, right: Expression) -> None:
        """Record left = right. Only used while a scope is being built."""
        for expr in (left, right):
            key = expr_key(expr)
            if key not in self._parent:
                self._parent[key] = key
                self._exprs[key] = replace(expr, eq_class=None)
        root_l = self._find(expr_key(left))
        root_r = self._find(expr_key(right))
        if root_l == root_r:
            return
        # Smallest key becomes the root so representatives are deterministic
        if root_l < root_r:
            self._parent[root_r] = root_l
        else:
            self._parent[root_l] = root_r

    def representative(self, expr: Expression) -> Expression:
        """Class representative (smallest key); the expression itself when unclassified."""
        key = expr_key(expr)
        if key not in self._parent:
            return expr
        return self._exprs[self._find(key)]

    def normalize(self, expr: Expression) -> Expression:
        """Replace every classified column by its class representative."""
        if not self._parent:
            return expr

        def substitute(node: Expression) -> Expression:
            if isinstance(node, ColumnRef):
                return self.representative(node)
            return node

        return transform_expr(expr, substitute)

    def canonical_key(self, expr: Expression) -> str:
        """Structural key of expr after class substitution and re-canonicalization."""
        return expr_key(canonicalize_expr(self.normalize(expr)))

    def equivalent(self, left: Expression, right: Expression) -> bool:
        """True if left and right are provably equal in this scope."""
        return self.canonical_key(left) == self.canonical_key(right)

    def classes(self) -> list[frozenset[str]]:
        """Non-trivial classes as sets of structural keys, sorted."""
        groups: dict[str, set[str]] = {}
        for key in self._parent:
            groups.setdefault(self._find(key), set()).add(key)
        return sorted(
            (frozenset(members) for members in groups.values() if len(members) > 1),
            key=lambda s: sorted(s),
        )

    def pairs(self) -> list[tuple[Expression, Expression]]:
        """(member, representative) pairs that rebuild these classes."""
        result = []
        for key in sorted(self._parent):
            root = self._find(key)
            if root != key:
                result.append((self._exprs[key], self._exprs[root]))
        return result

    def merged(self, *others: "EquivalenceClasses") -> "EquivalenceClasses":
        """New instance holding the union of self and others."""
        merged = EquivalenceClasses(self.pairs())
        for other in others:
            for left, right in other.pairs():
                merged.add_equality(left, right)
        return merged

    def remapped(self, fn: Callable[[Expression], Expression]) -> "EquivalenceClasses":
        """New instance with every member expression rewritten by fn."""
        return EquivalenceClasses((fn(l), fn(r)) for l, r in self.pairs())

    def __len__(self) -> int:
        return len(self.classes())


def column_equalities(predicate: Expression | None) -> list[tuple[ColumnRef, ColumnRef]]:
    """Column = column conjuncts of a predicate."""
    result = []
    for conj in conjuncts(predicate):
        if (isinstance(conj, BinaryOp) and conj.op == "="
                and isinstance(conj.left, ColumnRef) and isinstance(conj.right, ColumnRef)):
            result.append((conj.left, conj.right))
    return result


# ============================================================================
# Constant folding
# ============================================================================

def _is_number(value: object) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _comparable(a: object, b: object) -> bool:
    if _is_number(a) and _is_number(b):
        # Decimal and float do not mix in comparisons
        return not ({type(a), type(b)} == {Decimal, float})
    return isinstance(a, str) and isinstance(b, str)


def fold_constant(op: str, values: list[object]) -> tuple[bool, object]:
    """
    Evaluate op over literal values.

    Args:
        op: Operator or function name (lowercase)
        values: Operand values

    Returns:
        (folded, value); folded is False when the operation is unknown or
        unsafe (NULL operands, division by zero, mixed types)
    """
    if any(v is None for v in values):
        return False, None

    if op in ("and", "or", "not"):
        if not all(isinstance(v, bool) for v in values):
            return False, None
        if op == "and":
            return True, all(values)
        if op == "or":
            return True, any(values)
        return True, not values[0]

    if op == "neg":
        if len(values) == 1 and _is_number(values[0]):
            return True, -values[0]
        return False, None

    if op in ("+", "-", "*", "/"):
        if len(values) < 2 or not all(_is_number(v) for v in values):
            return False, None
        if any(isinstance(v, Decimal) for v in values) and any(isinstance(v, float) for v in values):
            return False, None
        if op == "-":
            if len(values) != 2:
                return False, None
            return True, values[0] - values[1]
        if op == "/":
            if len(values) != 2 or values[1] == 0:
                return False, None
            return True, values[0] / values[1]
        result = values[0]
        for v in values[1:]:
            result = result + v if op == "+" else result * v
        return True, result

    if op in ("=", "<>", "<", "<=", ">", ">="):
        if len(values) != 2 or not _comparable(values[0], values[1]):
            return False, None
        a, b = values
        outcome = {
            "=": a == b,
            "<>": a != b,
            "<": a < b,
            "<=": a <= b,
            ">": a > b,
            ">=": a >= b,
        }[op]
        return True, outcome

    return False, None


def _try_fold(expr: Expression) -> Expression:
    if isinstance(expr, BinaryOp):
        operands = [expr.left, expr.right]
        op = expr.op
    elif isinstance(expr, FunctionCall) and not expr.distinct:
        operands = list(expr.args)
        op = expr.name
    else:
        return expr
    if not operands or not all(isinstance(o, Literal) for o in operands):
        return expr
    folded, value = fold_constant(op, [o.value for o in operands])
    if not folded:
        return expr
    return Literal(value)


# ============================================================================
# Expression normalization
# ============================================================================

def _flatten_args(name: str, args: Iterable[Expression]) -> list[Expression]:
    flat: list[Expression] = []
    for arg in args:
        if isinstance(arg, FunctionCall) and arg.name == name and not arg.distinct:
            flat.extend(arg.args)
        elif isinstance(arg, BinaryOp) and arg.op == name:
            flat.extend(_flatten_args(name, [arg.left, arg.right]))
        else:
            flat.append(arg)
    return flat


def _normalize_node(expr: Expression) -> Expression:
    """Normalize one node whose children are already canonical."""
    if isinstance(expr, BinaryOp) and expr.op in ASSOCIATIVE_OPS:
        expr = FunctionCall(expr.op, (expr.left, expr.right))

    if isinstance(expr, FunctionCall) and expr.name in ASSOCIATIVE_OPS and not expr.distinct:
        args = _flatten_args(expr.name, expr.args)
        if expr.name in ("and", "or"):
            # Idempotent connectives: drop duplicates
            unique: dict[str, Expression] = {}
            for arg in args:
                unique.setdefault(expr_key(arg), arg)
            args = list(unique.values())
        args.sort(key=expr_key)
        if len(args) == 1:
            return args[0]
        expr = FunctionCall(expr.name, tuple(args))

    elif isinstance(expr, BinaryOp) and expr.op in SYMMETRIC_OPS:
        if expr_key(expr.left) > expr_key(expr.right):
            expr = BinaryOp(expr.op, expr.right, expr.left)

    elif isinstance(expr, BinaryOp) and expr.op in FLIPPED_OPS:
        if expr_key(expr.left) > expr_key(expr.right):
            expr = BinaryOp(FLIPPED_OPS[expr.op], expr.right, expr.left)

    return _try_fold(expr)


def canonicalize_expr(expr: Expression) -> Expression:
    """Fold, flatten and sort an expression (no equivalence tagging)."""
    stripped = transform_expr(expr, lambda e: replace(e, eq_class=None))
    return transform_expr(stripped, _normalize_node)


def plan_key(node: OperatorNode) -> str:
    """Structural key of an operator sub-tree (ignores tags and classes)."""
    if isinstance(node, Scan):
        parts = "" if node.partitions is None else "|" + ",".join(node.partitions)
        return f"scan:{node.table}@{node.alias}[{','.join(node.columns)}{parts}]"
    if isinstance(node, Filter):
        return f"filter({expr_key(node.predicate)};{plan_key(node.child)})"
    if isinstance(node, Project):
        cols = ",".join(f"{ne.qualifier}.{ne.name}={expr_key(ne.expr)}" for ne in node.exprs)
        return f"project({cols};{plan_key(node.child)})"
    if isinstance(node, Aggregate):
        keys = ",".join(f"{ne.name}={expr_key(ne.expr)}" for ne in node.group_keys)
        aggs = ",".join(f"{ne.name}={expr_key(ne.expr)}" for ne in node.aggregates)
        return f"aggregate([{keys}][{aggs}];{plan_key(node.child)})"
    if isinstance(node, Join):
        cond = expr_key(node.condition) if node.condition is not None else ""
        return f"join:{node.join_kind.value}({cond};{plan_key(node.left)};{plan_key(node.right)})"
    raise TypeError(f"Not an operator: {node!r}")


# ============================================================================
# Plan canonicalization
# ============================================================================

class Canonicalizer:
    """
    One canonicalization pass.

    eq_class ids are handed out per pass: ids from different passes must
    not be compared.
    """

    def __init__(self):
        self._class_ids: dict[str, int] = {}

    def _class_id(self, key: str) -> int:
        if key not in self._class_ids:
            self._class_ids[key] = len(self._class_ids) + 1
        return self._class_ids[key]

    def _tag(self, expr: Expression, classes: EquivalenceClasses) -> Expression:
        def tag(node: Expression) -> Expression:
            key = expr_key(classes.normalize(replace(node, eq_class=None)))
            return replace(node, eq_class=self._class_id(key))

        return transform_expr(expr, tag)

    def _named(self, named: tuple[NamedExpr, ...], classes: EquivalenceClasses) -> tuple[NamedExpr, ...]:
        return tuple(
            replace(ne, expr=self._tag(canonicalize_expr(ne.expr), classes))
            for ne in named
        )

    def run(self, node: OperatorNode) -> OperatorNode:
        """Canonicalize node and its sub-tree (bottom-up)."""
        if isinstance(node, Scan):
            return replace(node, classes=EquivalenceClasses())

        if isinstance(node, Filter):
            child = self.run(node.child)
            predicate = canonicalize_expr(node.predicate)
            classes = child.classes.merged(EquivalenceClasses(column_equalities(predicate)))
            return Filter(
                predicate=self._tag(predicate, classes),
                child=child,
                classes=classes,
            )

        if isinstance(node, Project):
            child = self.run(node.child)
            classes = child.classes
            return Project(exprs=self._named(node.exprs, classes), child=child, classes=classes)

        if isinstance(node, Aggregate):
            child = self.run(node.child)
            classes = child.classes
            return Aggregate(
                group_keys=self._named(node.group_keys, classes),
                aggregates=self._named(node.aggregates, classes),
                child=child,
                classes=classes,
            )

        if isinstance(node, Join):
            return self._run_join(node)

        raise TypeError(f"Not an operator: {node!r}")

    def _run_join(self, node: Join) -> Join:
        left = self.run(node.left)
        right = self.run(node.right)
        kind = node.join_kind
        commuted = node.commuted

        if kind == JoinKind.RIGHT:
            left, right = right, left
            kind = JoinKind.LEFT
            commuted = not commuted
        elif kind.is_commutative and plan_key(left) > plan_key(right):
            left, right = right, left
            commuted = not commuted

        condition = canonicalize_expr(node.condition) if node.condition is not None else None

        # Rows padded with NULLs break equalities of the nullable side
        if kind in (JoinKind.INNER, JoinKind.CROSS):
            classes = left.classes.merged(right.classes, EquivalenceClasses(column_equalities(condition)))
        elif kind == JoinKind.LEFT:
            classes = left.classes.merged()
        else:
            classes = EquivalenceClasses()

        if condition is not None:
            condition = self._tag(condition, classes)
        return Join(
            join_kind=kind,
            condition=condition,
            left=left,
            right=right,
            commuted=commuted,
            classes=classes,
        )


def canonicalize(plan: OperatorNode) -> OperatorNode:
    """
    Canonicalize an operator tree.

    Args:
        plan: Query plan or MV definition

    Returns:
        New canonical tree; plan itself is not modified
    """
    return Canonicalizer().run(plan)
