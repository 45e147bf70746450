"""Variable Context - per-execution variable store with template interpolation.

Resolves {{path.to.value}} template variables against the execution's
variables. Unresolved variables degrade to an empty string instead of raising,
since workflows are user-authored and must not crash on typos.
"""

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterator, List, Optional

from crm_automation.core.logging import get_logger

logger = get_logger(__name__)

# Compiled regex for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{(.+?)\}\}')

# Key under which engine signals are persisted alongside the variables
ENGINE_STATE_KEY = '_engine'


def get_nested_value(data: Any, path: str) -> Any:
    """Get a nested value using dot notation.

    Walks mapping keys and list indices. Returns None on any missing or
    non-container intermediate.

    Examples:
        >>> get_nested_value({"lead": {"name": "Ana"}}, "lead.name")
        'Ana'
        >>> get_nested_value({"items": [{"sku": "x"}]}, "items.0.sku")
        'x'
    """
    if data is None or not path:
        return None

    current = data
    for part in path.strip().split('.'):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def stringify(value: Any) -> str:
    """Render a context value the way templates show it."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


@dataclass
class EngineSignals:
    """Engine-internal signals kept apart from user variables.

    The only cross-invocation signal is the resume marker: the node being
    re-entered and the response that satisfied its wait.
    """
    resumed_node_id: Optional[str] = None
    resumed_response: Optional[Dict[str, Any]] = None

    def mark_resume(self, node_id: str, response: Optional[Dict[str, Any]] = None) -> None:
        self.resumed_node_id = node_id
        self.resumed_response = dict(response or {})

    def consume_resume(self, node_id: str) -> Optional[Dict[str, Any]]:
        """Return the resume payload if node_id is being re-entered, else None.

        The marker is cleared so that a later visit of the same node (e.g. in a
        loop) is treated as a fresh entry.
        """
        if self.resumed_node_id != node_id:
            return None
        response = self.resumed_response or {}
        self.resumed_node_id = None
        self.resumed_response = None
        return response

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resumed_node_id": self.resumed_node_id,
            "resumed_response": self.resumed_response,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineSignals":
        data = data or {}
        return cls(
            resumed_node_id=data.get("resumed_node_id"),
            resumed_response=data.get("resumed_response"),
        )


@dataclass
class ExecutionContext:
    """Mutable variable store for one workflow execution.

    Keys are dot-delimited paths (``lead.phone``). Conventional top-level keys
    are ``organization_id``, ``execution_id`` and ``connection_id``.
    """
    data: Dict[str, Any] = field(default_factory=dict)
    signals: EngineSignals = field(default_factory=EngineSignals)
    # Fork-time copy of the variables, set on branch contexts only
    _forked_from: Optional[Dict[str, Any]] = field(default=None, init=False, repr=False, compare=False)

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def get(self, path: str, default: Any = None) -> Any:
        value = get_nested_value(self.data, path)
        return default if value is None else value

    def set(self, path: str, value: Any) -> None:
        """Write a value at a dotted path, creating intermediate mappings."""
        parts = path.split('.')
        target = self.data
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = value

    def update(self, values: Optional[Dict[str, Any]]) -> None:
        """Merge top-level values into the context (later values win)."""
        if values:
            self.data.update(values)

    def get_all(self) -> Dict[str, Any]:
        return self.data

    def __contains__(self, path: str) -> bool:
        return get_nested_value(self.data, path) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self.data)

    # =========================================================================
    # INTERPOLATION
    # =========================================================================

    def resolve(self, template: Any) -> str:
        """Replace every {{path}} occurrence with the stringified value."""
        if template is None:
            return ''
        text = template if isinstance(template, str) else stringify(template)
        if '{{' not in text:
            return text

        def replace(match: re.Match) -> str:
            value = get_nested_value(self.data, match.group(1))
            if value is None:
                logger.debug("Unresolved template variable", path=match.group(1).strip())
            return stringify(value)

        return TEMPLATE_PATTERN.sub(replace, text)

    def resolve_params(self, value: Any, raw_keys: FrozenSet[str] = frozenset()) -> Any:
        """Resolve templates recursively inside dicts and lists.

        Values stored under a key in raw_keys, at any depth, are left as written.
        """
        if isinstance(value, str):
            return self.resolve(value) if '{{' in value else value
        if isinstance(value, dict):
            return {
                k: v if k in raw_keys else self.resolve_params(v, raw_keys)
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [self.resolve_params(item, raw_keys) for item in value]
        return value

    # =========================================================================
    # SNAPSHOTS / BRANCHING
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        """Clean copy of the user variables (no engine-internal keys)."""
        return {
            key: copy.deepcopy(value)
            for key, value in self.data.items()
            if not key.startswith('_')
        }

    def to_dict(self) -> Dict[str, Any]:
        """Full snapshot for persistence, including engine signals."""
        state = copy.deepcopy(self.data)
        state[ENGINE_STATE_KEY] = self.signals.to_dict()
        return state

    @classmethod
    def from_dict(cls, state: Optional[Dict[str, Any]]) -> "ExecutionContext":
        data = copy.deepcopy(state or {})
        signals = EngineSignals.from_dict(data.pop(ENGINE_STATE_KEY, None))
        return cls(data=data, signals=signals)

    def fork(self) -> "ExecutionContext":
        """Copy-on-branch view for one fan-out continuation."""
        branch = ExecutionContext(
            data=copy.deepcopy(self.data),
            signals=EngineSignals.from_dict(self.signals.to_dict()),
        )
        branch._forked_from = copy.deepcopy(self.data)
        return branch

    def changed_keys(self) -> List[str]:
        """Top-level keys written since this context was forked."""
        if self._forked_from is None:
            return list(self.data)
        return [
            key for key, value in self.data.items()
            if key not in self._forked_from or self._forked_from[key] != value
        ]

    def merge(self, branch: "ExecutionContext") -> None:
        """Publish the top-level keys a finished branch changed (last writer wins).

        Keys the branch only carried over from the fork are left alone, so a
        sibling that finished earlier keeps its writes.
        """
        for key in branch.changed_keys():
            self.data[key] = branch.data[key]
