"""Execution engine result models.

Node handlers return plain dicts; NodeExecutor wraps them in ExecutionResult.
A suspension is an explicit outcome carried next to the result, never an
exception, so a paused node can not be mistaken for a failed one.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional

from crm_automation.models.database import ExecutionStatus
from crm_automation.services.context import ExecutionContext


class NodeOutcome(str, Enum):
    """What the engine does after a node ran."""
    CONTINUE = "continue"      # Select outgoing edges
    SUSPEND = "suspend"        # Persist wait state, end this branch
    FAIL = "fail"              # Abort this branch


class SuspendReason(str, Enum):
    DELAY = "delay"
    WAIT_INPUT = "wait_input"


@dataclass
class Suspension:
    """Resumption state recorded by a pausing node.

    resume_at is set for delays. pending_input describes the wait-point record
    (input_type, conversation_id, config, timeout_at) for wait_input/buttons.
    """
    node_id: str
    reason: SuspendReason
    resume_at: Optional[datetime] = None
    pending_input: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "reason": self.reason.value,
            "resume_at": self.resume_at.isoformat() if self.resume_at else None,
            "pending_input": self.pending_input,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Suspension":
        resume_at = data.get("resume_at")
        if isinstance(resume_at, str):
            resume_at = datetime.fromisoformat(resume_at)
        return cls(
            node_id=data["node_id"],
            reason=SuspendReason(data.get("reason", SuspendReason.DELAY.value)),
            resume_at=resume_at,
            pending_input=data.get("pending_input"),
        )


@dataclass
class ExecutionResult:
    """Standardized node execution result."""
    success: bool
    node_id: str
    node_type: str
    result: Optional[Dict] = None
    error: Optional[str] = None
    suspension: Optional[Suspension] = None
    execution_time: float = 0.0
    timestamp: str = ""

    @property
    def outcome(self) -> NodeOutcome:
        if not self.success:
            return NodeOutcome.FAIL
        if self.suspension is not None:
            return NodeOutcome.SUSPEND
        return NodeOutcome.CONTINUE

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "success": self.success,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "outcome": self.outcome.value,
            "execution_time": self.execution_time,
            "timestamp": self.timestamp or datetime.now().isoformat(),
        }
        if self.success:
            d["result"] = self.result or {}
        else:
            d["error"] = self.error
        if self.suspension is not None:
            d["suspend"] = self.suspension.to_dict()
        return d


@dataclass
class BranchError:
    node_id: str
    node_type: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "node_type": self.node_type, "error": self.error}


@dataclass
class RunResult:
    """Outcome of one engine invocation (start or resume).

    Status precedence: any suspended branch makes the run waiting, otherwise
    any failed branch makes it failed, otherwise it is completed.
    """
    context: ExecutionContext
    visited: List[str] = field(default_factory=list)
    errors: List[BranchError] = field(default_factory=list)
    suspensions: List[Suspension] = field(default_factory=list)
    results: List[ExecutionResult] = field(default_factory=list)

    @property
    def status(self) -> ExecutionStatus:
        if self.suspensions:
            return ExecutionStatus.WAITING
        if self.errors:
            return ExecutionStatus.FAILED
        return ExecutionStatus.COMPLETED

    @property
    def error_message(self) -> Optional[str]:
        if not self.errors:
            return None
        return "; ".join(f"{e.node_id}: {e.error}" for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "visited": list(self.visited),
            "errors": [e.to_dict() for e in self.errors],
            "suspensions": [s.to_dict() for s in self.suspensions],
            "context": self.context.snapshot(),
        }
