import pytest

from brain.conditions import evaluate, next_child, resolve_branch
from brain.schemas import Condition, ConditionalNode, Operator, StateType, StateUpdate
from brain.store import StateStore
from conftest import make_state


@pytest.mark.parametrize("current,op,value,expected", [
    ("5", "MORE_THAN", "3", True),
    ("3", "MORE_THAN", "3", False),
    ("3", "MORE_THAN_OR_EQUAL_TO", "3", True),
    ("2.5", "LESS_THAN", "3", True),
    ("3", "LESS_THAN_OR_EQUAL_TO", "3", True),
    ("3.0", "EQUALS", "3", True),
    ("4", "NOT_EQUALS", "3", True),
])
def test_number_comparisons(current, op, value, expected):
    assert evaluate(current, op, value, StateType.NUMBER) is expected


def test_number_parse_failure_is_false():
    assert evaluate("abc", "MORE_THAN", "3", StateType.NUMBER) is False
    assert evaluate("5", "MORE_THAN", "three", StateType.NUMBER) is False
    assert evaluate(None, Operator.EQUALS, "0", StateType.NUMBER) is False


def test_text_comparisons():
    assert evaluate("hello world", "CONTAINS", "world", StateType.TEXT) is True
    assert evaluate("hello", "NOT_CONTAINS", "world", StateType.TEXT) is True
    assert evaluate("Hello", "CONTAINS", "hello", StateType.TEXT) is False
    assert evaluate("hello", "EQUALS", "hello", StateType.TEXT) is True
    assert evaluate("hello", "NOT_EQUALS", "hello ", StateType.TEXT) is True


def test_boolean_comparisons():
    assert evaluate("true", "EQUALS", "true", StateType.BOOLEAN) is True
    assert evaluate("TRUE", "EQUALS", "true", StateType.BOOLEAN) is True
    assert evaluate("false", "NOT_EQUALS", "true", StateType.BOOLEAN) is True
    assert evaluate("maybe", "EQUALS", "true", StateType.BOOLEAN) is False


def test_unknown_or_mismatched_operator_is_false(caplog):
    assert evaluate("5", "BIGGER", "3", StateType.NUMBER) is False
    assert evaluate("hello", "MORE_THAN", "a", StateType.TEXT) is False
    assert evaluate("true", "CONTAINS", "t", StateType.BOOLEAN) is False
    assert "not valid" in caplog.text


def _node(combinator, conditions=()):
    return ConditionalNode(id="c", graph_id="g1", combinator=combinator, conditions=list(conditions),
                           true_child_id="yes", false_child_id=None)


@pytest.fixture
def store():
    return StateStore("g1", [
        make_state("x", starting_value="15"),
        make_state("mood", type="TEXT", starting_value="angry customer"),
    ])


def test_empty_condition_set(store):
    assert resolve_branch(_node("AND"), store) == "true"
    assert resolve_branch(_node("OR"), store) == "false"


def test_and_or_combinators(store):
    conditions = [
        Condition(state_id="x", operator="MORE_THAN", value="10"),
        Condition(state_id="mood", operator="CONTAINS", value="happy"),
    ]
    assert resolve_branch(_node("AND", conditions), store) == "false"
    assert resolve_branch(_node("OR", conditions), store) == "true"


def test_resolve_reads_current_values(store):
    node = _node("AND", [Condition(state_id="x", operator="MORE_THAN", value="10")])
    assert resolve_branch(node, store) == "true"
    store.apply_updates([StateUpdate(state_id="x", new_value="2")])
    assert resolve_branch(node, store) == "false"


def test_unknown_state_condition_is_false(store):
    node = _node("AND", [Condition(state_id="missing", operator="EQUALS", value="1")])
    assert resolve_branch(node, store) == "false"


def test_next_child():
    node = _node("AND")
    assert next_child(node, "true") == "yes"
    assert next_child(node, "false") is None
