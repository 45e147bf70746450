"""Edge selection rules applied after a node completes.

Every rule only looks at the node's own outgoing edges, in enumeration order:

- default: follow every edge (fan-out)
- condition: edges labelled "True" or "False" matching the node's result
- ab_test: the edge whose sourceHandle is the selected path id
- buttons: the clicked button's handle, else "continue", else every edge
  (a configured branch id or a timeout edge take precedence)
- wait_input: the configured next-branch edge, else "timeout" after a
  timeout, else "success"
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from crm_automation.constants import (
    CONDITION_FALSE_LABEL,
    CONDITION_TRUE_LABEL,
    DEFAULT_AB_PATHS,
    HANDLE_CONTINUE,
    HANDLE_SUCCESS,
    HANDLE_TIMEOUT,
)
from crm_automation.core.logging import get_logger
from crm_automation.services.definition import Edge, Node

logger = get_logger(__name__)


# =============================================================================
# AB SPLIT
# =============================================================================

def rolling_hash(value: str) -> int:
    """32-bit signed rolling hash (h * 31 + code point), returned as abs value."""
    h = 0
    for char in value:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
        if h >= 0x80000000:
            h -= 0x100000000
    return abs(h)


def compute_ab_bucket(identifier: str, node_id: str) -> int:
    """Bucket 0-99 for an identifier at a given ab_test node."""
    return rolling_hash(f"{identifier}{node_id}") % 100


def select_ab_path(paths: Optional[Sequence[Mapping[str, Any]]], bucket: int) -> Optional[Mapping[str, Any]]:
    """First path whose cumulative percentage exceeds the bucket.

    Falls back to the last path when the percentages add up to less than 100.
    """
    paths = list(paths or DEFAULT_AB_PATHS)
    if not paths:
        return None

    cumulative = 0.0
    for path in paths:
        try:
            cumulative += float(path.get('percentage', 0) or 0)
        except (TypeError, ValueError):
            continue
        if bucket < cumulative:
            return path
    return paths[-1]


# =============================================================================
# SELECTION
# =============================================================================

def _by_handle(edges: List[Edge], handle: Optional[str]) -> List[Edge]:
    if handle is None:
        return []
    return [e for e in edges if e.source_handle == handle]


def _select_condition(edges: List[Edge], output: Dict[str, Any]) -> List[Edge]:
    expected = CONDITION_TRUE_LABEL if output.get('condition_result') else CONDITION_FALSE_LABEL
    return [e for e in edges if e.label == expected]


def _select_ab_test(edges: List[Edge], output: Dict[str, Any]) -> List[Edge]:
    return _by_handle(edges, output.get('path_id'))


def _branch_edge(edges: List[Edge], branch_id: Optional[str]) -> List[Edge]:
    """Edge whose sourceHandle is the branch id, else the edge with that id."""
    if not branch_id:
        return []
    selected = _by_handle(edges, branch_id) or [e for e in edges if e.id == branch_id]
    return selected[:1]


def _select_buttons(edges: List[Edge], output: Dict[str, Any]) -> List[Edge]:
    selected = _branch_edge(edges, output.get('next_branch_id'))
    if selected:
        return selected
    if output.get('timed_out'):
        selected = _by_handle(edges, HANDLE_TIMEOUT)
        if selected:
            return selected
    selected = _by_handle(edges, output.get('button_id'))
    if selected:
        return selected
    selected = _by_handle(edges, HANDLE_CONTINUE)
    if selected:
        return selected
    return list(edges)


def _select_wait_input(edges: List[Edge], output: Dict[str, Any]) -> List[Edge]:
    if output.get('next_branch_id'):
        return _branch_edge(edges, output['next_branch_id'])

    # Edges without a handle behave as the success edge
    success = [e for e in edges if e.source_handle in (HANDLE_SUCCESS, None)]
    if output.get('timed_out'):
        return _by_handle(edges, HANDLE_TIMEOUT) or success
    return success


EDGE_SELECTORS = {
    'condition': _select_condition,
    'ab_test': _select_ab_test,
    'buttons': _select_buttons,
    'wait_input': _select_wait_input,
}


def select_next_edges(node: Node, out_edges: List[Edge], output: Optional[Dict[str, Any]]) -> List[Edge]:
    """Edges to follow from a node that completed with the given result."""
    selector = EDGE_SELECTORS.get(node.type)
    if selector is None:
        return list(out_edges)

    selected = selector(out_edges, output or {})
    logger.debug("Edges selected", node_id=node.id, node_type=node.type,
                 selected=[e.id for e in selected], available=len(out_edges))
    return selected
