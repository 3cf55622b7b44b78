"""Reconciliation state machine."""

from .reconciler import (
    ALLOWED_TRANSITIONS,
    AdapterTimeouts,
    AttemptResult,
    InvalidPhaseTransition,
    Phase,
    PhaseTracker,
    Reconciler,
    ResourceHealth,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AdapterTimeouts",
    "AttemptResult",
    "InvalidPhaseTransition",
    "Phase",
    "PhaseTracker",
    "Reconciler",
    "ResourceHealth",
]
