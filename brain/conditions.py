import logging
import operator
from typing import Optional

from .schemas import OPERATORS_BY_TYPE, Combinator, ConditionalNode, Operator, StateType
from .store import StateStore, parse_number

logger = logging.getLogger(__name__)

NUMBER_OPS = {
    Operator.EQUALS: operator.eq,
    Operator.NOT_EQUALS: operator.ne,
    Operator.MORE_THAN: operator.gt,
    Operator.MORE_THAN_OR_EQUAL_TO: operator.ge,
    Operator.LESS_THAN: operator.lt,
    Operator.LESS_THAN_OR_EQUAL_TO: operator.le,
}

TEXT_OPS = {
    Operator.EQUALS: operator.eq,
    Operator.NOT_EQUALS: operator.ne,
    Operator.CONTAINS: lambda current, value: value in current,
    Operator.NOT_CONTAINS: lambda current, value: value not in current,
}


def _as_operator(op) -> Optional[Operator]:
    if isinstance(op, Operator):
        return op
    try:
        return Operator(op)
    except ValueError:
        return None


def _normalize_bool(value: str) -> Optional[str]:
    text = str(value).strip().lower()
    return text if text in ("true", "false") else None


def evaluate(current_value, op, comparison_value, state_type) -> bool:
    """Compare a state's current value against a condition value.

    Never raises: unknown operators, operators that do not apply to the
    state type and unparseable values all evaluate to False.
    """
    resolved = _as_operator(op)
    try:
        state_type = StateType(state_type)
    except ValueError:
        logger.warning(f"Unknown state type {state_type!r}; condition is false")
        return False
    if resolved is None or resolved not in OPERATORS_BY_TYPE[state_type]:
        logger.warning(f"Operator {op!r} is not valid for {state_type.value}; condition is false")
        return False

    if state_type == StateType.NUMBER:
        left, right = parse_number(current_value), parse_number(comparison_value)
        if left is None or right is None:
            logger.warning(f"Cannot compare {current_value!r} {resolved.value} {comparison_value!r} as numbers")
            return False
        return NUMBER_OPS[resolved](left, right)

    if state_type == StateType.BOOLEAN:
        left, right = _normalize_bool(current_value), _normalize_bool(comparison_value)
        if left is None or right is None:
            logger.warning(f"Cannot compare {current_value!r} {resolved.value} {comparison_value!r} as booleans")
            return False
        return (left == right) if resolved == Operator.EQUALS else (left != right)

    if current_value is None or comparison_value is None:
        return False
    return TEXT_OPS[resolved](str(current_value), str(comparison_value))


def resolve_branch(node: ConditionalNode, store: StateStore) -> str:
    """Return "true" or "false" for a conditional node.

    Every condition reads its state from the store at call time, so values
    written earlier in the same turn are visible. An empty condition set is
    true under AND and false under OR.
    """
    results = []
    for condition in node.conditions:
        state = store.get(condition.state_id)
        if state is None:
            logger.warning(f"Node {node.id}: unknown state {condition.state_id}; condition is false")
            results.append(False)
            continue
        results.append(evaluate(state.current_value, condition.operator, condition.value, state.type))

    combined = any(results) if node.combinator == Combinator.OR else all(results)
    logger.info(f"Node {node.id} ({node.combinator.value}) conditions {results} -> {combined}")
    return "true" if combined else "false"


def next_child(node: ConditionalNode, branch: str) -> Optional[str]:
    return node.true_child_id if branch == "true" else node.false_child_id
