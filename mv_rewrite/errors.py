"""
Errors: fatal internal-consistency faults raised by the rewrite pipeline.

A rejected rewrite is never an error. These exceptions signal that the
caller handed over something that breaks a contract (a plan that is not a
tree, a catalog that contradicts itself) and the compilation must abort.
"""


class InvariantViolationError(RuntimeError):
    """Some contract of the rewrite subsystem was violated by its caller."""


class PlanCycleError(InvariantViolationError):
    """An operator tree contains a cycle (a node is its own ancestor)."""


class CatalogConsistencyError(InvariantViolationError):
    """
    The base catalog contradicts the plan or the MV catalog.

    Raised for partitions missing from the base catalog, unknown base tables
    and partition versions that went backwards.
    """


class PlanBuildError(ValueError):
    """SQL text could not be turned into an operator tree."""
