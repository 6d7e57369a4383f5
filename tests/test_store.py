from brain.schemas import StateUpdate
from brain.store import StateStore, format_number, parse_number
from conftest import make_state


def _store(*states, **kwargs):
    return StateStore("g1", states, **kwargs)


def test_load_starts_at_starting_value_or_type_default():
    store = _store(
        make_state("n", starting_value="5"),
        make_state("n0"),
        make_state("t", type="TEXT"),
        make_state("b", type="BOOLEAN"),
        make_state("other", graph_id="g2"),
    )
    assert store.values() == {"n": "5", "n0": "0", "t": "", "b": "false"}


def test_get_by_id_or_name():
    store = _store(make_state("s1").model_copy(update={"name": "score"}))
    assert store.get("s1").name == "score"
    assert store.get("score").id == "s1"
    assert store.get("nope") is None


def test_persistent_number_accumulates():
    store = _store(make_state("x", persistent=True, starting_value="5"))
    store.apply_updates([StateUpdate(state_id="x", new_value="3")])
    assert store.get("x").current_value == "8"
    store.apply_updates([StateUpdate(state_id="x", new_value="2")])
    assert store.get("x").current_value == "10"


def test_persistent_number_with_garbage_counts_as_zero():
    store = _store(make_state("x", persistent=True, starting_value="5"))
    store.apply_updates([StateUpdate(state_id="x", new_value="lots")])
    assert store.get("x").current_value == "5"


def test_non_persistent_replaces():
    store = _store(make_state("x", starting_value="5"))
    store.apply_updates([StateUpdate(state_id="x", new_value="3")])
    assert store.get("x").current_value == "3"


def test_persistent_text_replaces_by_default():
    store = _store(make_state("t", type="TEXT", persistent=True, starting_value="a"))
    store.apply_updates([StateUpdate(state_id="t", new_value="b")])
    assert store.get("t").current_value == "b"


def test_accumulate_all_types_reproduces_legacy_behavior():
    store = _store(make_state("t", type="TEXT", persistent=True, starting_value="a"), accumulate_all_types=True)
    store.apply_updates([StateUpdate(state_id="t", new_value="2")])
    assert store.get("t").current_value == "2"
    store.apply_updates([StateUpdate(state_id="t", new_value="hello")])
    assert store.get("t").current_value == "2"


def test_unknown_update_is_skipped():
    store = _store(make_state("x"))
    store.apply_updates([StateUpdate(state_id="missing", new_value="1")])
    assert store.values() == {"x": "0"}


def test_reset_non_persistent_is_idempotent():
    store = _store(
        make_state("p", persistent=True, starting_value="1"),
        make_state("n", starting_value="1"),
        make_state("t", type="TEXT"),
    )
    store.apply_updates([
        StateUpdate(state_id="p", new_value="4"),
        StateUpdate(state_id="n", new_value="4"),
        StateUpdate(state_id="t", new_value="hi"),
    ])
    store.reset_non_persistent()
    once = store.values()
    store.reset_non_persistent()
    assert store.values() == once == {"p": "5", "n": "1", "t": ""}


def test_snapshot_and_restore():
    store = _store(make_state("x", persistent=True))
    snapshot = store.snapshot()
    store.apply_updates([StateUpdate(state_id="x", new_value="7")])
    store.restore(snapshot)
    assert store.get("x").current_value == "0"


def test_number_helpers():
    assert parse_number(" 4.5 ") == 4.5
    assert parse_number("nan") is None
    assert parse_number(None) is None
    assert format_number(8.0) == "8"
    assert format_number(0.5) == "0.5"


def test_resume_keeps_stored_persistent_values():
    stored = [
        make_state("p", persistent=True, starting_value="1").model_copy(update={"current_value": "12"}),
        make_state("n", starting_value="1").model_copy(update={"current_value": "9"}),
        make_state("fresh", persistent=True, starting_value="3"),
    ]
    assert _store(*stored, resume=True).values() == {"p": "12", "n": "1", "fresh": "3"}
    assert _store(*stored).values() == {"p": "1", "n": "1", "fresh": "3"}
