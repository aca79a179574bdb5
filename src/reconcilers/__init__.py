from reconcilers.base import (
    Outcome,
    ReconcileResult,
    Reconciler,
    ReconcilerContext,
)
from reconcilers.registry import ReconcilerRegistry, register_builtin_reconcilers

__all__ = [
    "Outcome",
    "ReconcileResult",
    "Reconciler",
    "ReconcilerContext",
    "ReconcilerRegistry",
    "register_builtin_reconcilers",
]
