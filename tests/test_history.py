import sqlite3
import threading
from unittest.mock import patch

import pytest

from brain.errors import GraphNotFoundError
from brain.history import SQLiteRepository
from brain.schemas import Message
from conftest import branching_definition, make_state


@pytest.fixture
def repository(tmp_path):
    return SQLiteRepository(str(tmp_path / "brain.db"))


def test_definition_round_trip(repository):
    definition = branching_definition(analysis=True)
    repository.save_definition(definition)
    loaded = repository.load_definition("g1")
    assert loaded.graph == definition.graph
    assert {n.id: n.kind for n in loaded.nodes} == {n.id: n.kind for n in definition.nodes}
    assert loaded.node("cond").conditions == definition.node("cond").conditions
    assert sorted(p.id for p in loaded.prompts) == ["prompt-1", "prompt-2", "score"]
    assert loaded.states[0].prompt_id == "score"


def test_missing_graph(repository):
    with pytest.raises(GraphNotFoundError):
        repository.load_definition("nope")


def test_delete_cascades(repository):
    repository.save_definition(branching_definition())
    repository.delete_graph("g1")
    assert repository.list_graphs() == []
    with repository._connect() as conn:
        assert conn.execute("select count(*) from nodes").fetchone()[0] == 0
        assert conn.execute("select count(*) from states").fetchone()[0] == 0


def test_write_states(repository):
    definition = branching_definition()
    repository.save_definition(definition)
    state = definition.states[0].model_copy(update={"current_value": "42"})
    repository.write_states([state])
    assert repository.load_definition("g1").states[0].current_value == "42"


def test_api_keys(repository):
    assert repository.get_api_key("u1", "openai") is None
    repository.set_api_key("u1", "openai", "sk-1")
    repository.set_api_key("u1", "openai", "sk-2")
    assert repository.get_api_key("u1", "openai") == "sk-2"


def test_history(repository):
    repository.save_message("s1", "g1", Message(role="user", content="hi"))
    repository.save_message("s1", "g1", Message(role="assistant", content="hello"))
    repository.save_message("s2", "g1", Message(role="user", content="other"))
    assert [m.content for m in repository.load_history("s1")] == ["hi", "hello"]
    repository.clear_history("s1")
    assert repository.load_history("s1") == []


def test_in_memory_repository():
    repository = SQLiteRepository(":memory:")
    repository.save_definition(branching_definition())
    assert [g.id for g in repository.list_graphs()] == ["g1"]


def test_saving_graph_again_keeps_reached_state_values(repository):
    definition = branching_definition()
    definition.states.append(make_state("gone"))
    repository.save_definition(definition)
    repository.write_states([definition.states[0].model_copy(update={"current_value": "42"})])
    repository.save_definition(branching_definition())
    states = repository.load_definition("g1").states
    assert [(s.id, s.current_value) for s in states] == [("x", "42")]


def test_file_connections_are_closed(repository):
    opened = []
    connect = sqlite3.connect

    def tracking_connect(*args, **kwargs):
        conn = connect(*args, **kwargs)
        opened.append(conn)
        return conn

    with patch("brain.history.sqlite3.connect", side_effect=tracking_connect):
        repository.save_message("s1", "g1", Message(role="user", content="hi"))
        assert [m.content for m in repository.load_history("s1")] == ["hi"]
    assert len(opened) == 2
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("select 1")


def test_in_memory_repository_is_shared_across_threads():
    repository = SQLiteRepository(":memory:")

    def write(session_id):
        for i in range(20):
            repository.save_message(session_id, "g1", Message(role="user", content=str(i)))

    workers = [threading.Thread(target=write, args=(f"s{n}",)) for n in range(4)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    assert [len(repository.load_history(f"s{n}")) for n in range(4)] == [20, 20, 20, 20]
