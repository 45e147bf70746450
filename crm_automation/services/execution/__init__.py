"""Execution engine package.

Graph walking, edge selection, condition evaluation and result models for
workflow runs.
"""

from .models import (
    BranchError,
    ExecutionResult,
    NodeOutcome,
    RunResult,
    Suspension,
    SuspendReason,
)
from .engine import WorkflowEngine, StatusCallback

__all__ = [
    'BranchError',
    'ExecutionResult',
    'NodeOutcome',
    'RunResult',
    'Suspension',
    'SuspendReason',
    'WorkflowEngine',
    'StatusCallback',
]
