"""Condition evaluation for condition nodes.

A condition node holds one or more comparisons of a context variable against
a configured value, combined with ALL/ANY logic:

    {"logic": "ALL",
     "conditions": [{"variable": "lead.score", "operator": ">", "value": "50"}]}

The legacy single-comparison form puts variable/operator/value on the node
itself.

Supported operators:
- equals (==): stringified values are equal ("5" equals 5)
- not_equals (!=)
- greater_than (>), less_than (<), greater_equal (>=), less_equal (<=):
  numeric when both sides parse as numbers, otherwise lexicographic
- contains: substring, or membership for lists
- not_contains
- starts_with, ends_with
- is_set: value present and not None
- is_empty: None, "", [] or {}
- is_not_empty
"""

import operator as op
from typing import Any, Callable, Dict, List, Mapping, Optional

from crm_automation.core.logging import get_logger
from crm_automation.services.context import ExecutionContext, stringify

logger = get_logger(__name__)


# Type alias for condition dict
ConditionDict = Dict[str, Any]

OPERATOR_ALIASES: Dict[str, str] = {
    '==': 'equals',
    '!=': 'not_equals',
    '>': 'greater_than',
    '<': 'less_than',
    '>=': 'greater_equal',
    '<=': 'less_equal',
}

_ORDERING: Dict[str, Callable[[Any, Any], bool]] = {
    'greater_than': op.gt,
    'less_than': op.lt,
    'greater_equal': op.ge,
    'less_equal': op.le,
}


def normalize_operator(operator: Optional[str]) -> str:
    name = (operator or 'equals').strip()
    return OPERATOR_ALIASES.get(name, name.lower())


def _variable_path(variable: Any) -> str:
    """Accept both 'lead.score' and '{{lead.score}}'."""
    path = str(variable or '').strip()
    if path.startswith('{{') and path.endswith('}}'):
        path = path[2:-2].strip()
    return path


def _safe_compare(actual: Any, target: Any, comparator) -> bool:
    """Compare numerically when both sides parse, otherwise as strings."""
    if actual is None or target is None:
        return False

    try:
        return comparator(float(actual), float(target))
    except (ValueError, TypeError):
        pass

    try:
        return comparator(stringify(actual), stringify(target))
    except (ValueError, TypeError):
        return False


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def evaluate_operator(operator: str, actual: Any, target: Any) -> bool:
    """Evaluate a single operator against an already-resolved value."""
    operator = normalize_operator(operator)

    if operator == 'equals':
        return stringify(actual) == stringify(target)

    elif operator == 'not_equals':
        return stringify(actual) != stringify(target)

    elif operator in _ORDERING:
        return _safe_compare(actual, target, _ORDERING[operator])

    elif operator == 'contains':
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return target in actual or stringify(target) in [stringify(a) for a in actual]
        return stringify(target) in stringify(actual)

    elif operator == 'not_contains':
        return not evaluate_operator('contains', actual, target)

    elif operator == 'starts_with':
        if actual is None:
            return False
        return stringify(actual).startswith(stringify(target))

    elif operator == 'ends_with':
        if actual is None:
            return False
        return stringify(actual).endswith(stringify(target))

    elif operator == 'is_set':
        return actual is not None

    elif operator == 'is_empty':
        return _is_empty(actual)

    elif operator == 'is_not_empty':
        return not _is_empty(actual)

    else:
        logger.warning("Unknown operator", operator=operator)
        return False


def evaluate_condition(condition: Mapping[str, Any], context: ExecutionContext) -> bool:
    """Evaluate one comparison against the execution context."""
    path = _variable_path(condition.get('variable'))
    operator = condition.get('operator', 'equals')
    target = condition.get('value')
    if isinstance(target, str) and '{{' in target:
        target = context.resolve(target)

    actual = context.get(path) if path else None

    try:
        result = evaluate_operator(operator, actual, target)
    except Exception as e:
        logger.warning("Condition evaluation error", variable=path, operator=operator, error=str(e))
        return False

    logger.debug("Condition evaluated", variable=path, operator=operator,
                 actual=actual, target=target, result=result)
    return result


def conditions_from_config(config: Mapping[str, Any]) -> List[ConditionDict]:
    """Comparison list of a condition node, supporting the single-comparison form."""
    conditions = config.get('conditions')
    if conditions:
        return list(conditions)
    return [{
        'variable': config.get('variable', ''),
        'operator': config.get('operator', 'equals'),
        'value': config.get('value', ''),
    }]


def evaluate_conditions(conditions: List[ConditionDict], context: ExecutionContext,
                        logic: str = 'ALL') -> bool:
    """Evaluate multiple comparisons with ALL/ANY logic.

    An empty list is vacuously true under ALL and false under ANY.
    """
    results = [evaluate_condition(c, context) for c in conditions]

    if str(logic).upper() in ('ANY', 'OR'):
        return any(results)
    return all(results)
