"""Convergence of nested order collections.

diff computes what to change; the converger applies it through an Order.
"""

from reconcile.diff import ReconcileSet, compare_sets, diff
from reconcile.converger import (
    ConvergeResult,
    ResourceConverger,
    Step,
    StepKind,
    acl_reader,
    items_reader,
)

__all__ = [
    "ReconcileSet",
    "compare_sets",
    "diff",
    "ConvergeResult",
    "ResourceConverger",
    "Step",
    "StepKind",
    "acl_reader",
    "items_reader",
]
