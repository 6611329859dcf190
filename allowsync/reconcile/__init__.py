"""allowsync reconciliation loop.

Public API:
    run_cycle    : one fetch → compare → persist → hook cycle
    ReconcileLoop: fixed-interval Idle/Running state machine around run_cycle
"""
from allowsync.reconcile.loop import (
    CycleOutcome,
    LoopState,
    LoopStats,
    ReconcileLoop,
    run_cycle,
)

__all__ = ["CycleOutcome", "LoopState", "LoopStats", "ReconcileLoop", "run_cycle"]
