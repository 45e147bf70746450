"""Automation engine exception hierarchy."""


class AutomationError(Exception):
    """Base exception for all automation engine errors."""


class WorkflowDefinitionError(AutomationError, ValueError):
    """Invalid workflow graph (missing trigger, dangling edge, duplicate node)."""


class ExecutionNotFoundError(AutomationError):
    """No execution exists with the requested id."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} not found")


class InvalidExecutionStateError(AutomationError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, execution_id: str, current: str, requested: str):
        self.execution_id = execution_id
        self.current = current
        self.requested = requested
        super().__init__(f"Execution {execution_id} cannot move from '{current}' to '{requested}'")


class NodeExecutionError(AutomationError):
    """Hard failure inside a node handler (external call rejected, bad config)."""
