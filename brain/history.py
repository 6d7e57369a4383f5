import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from pydantic import TypeAdapter

from .errors import GraphNotFoundError
from .schemas import Graph, GraphDefinition, GraphStateRecord, Message, Node, Prompt

logger = logging.getLogger(__name__)

NODE_ADAPTER = TypeAdapter(Node)

SCHEMA = """
create table if not exists graphs (
    id text primary key,
    user_id text,
    name text not null,
    child_node_id text
);
create table if not exists nodes (
    id text primary key,
    graph_id text not null references graphs(id) on delete cascade,
    kind text not null,
    node_json text not null
);
create table if not exists states (
    id text primary key,
    graph_id text not null references graphs(id) on delete cascade,
    name text not null,
    type text not null,
    persistent integer not null default 0,
    starting_value text,
    current_value text,
    prompt_id text
);
create table if not exists prompts (
    id text primary key,
    user_id text,
    name text not null,
    content text not null,
    is_public integer not null default 0,
    config_json text not null
);
create table if not exists api_keys (
    user_id text not null,
    provider text not null,
    api_key text not null,
    primary key (user_id, provider)
);
create table if not exists messages (
    id integer primary key autoincrement,
    session_id text not null,
    graph_id text not null,
    role text not null,
    content text not null,
    created_at text not null
);
"""


class SQLiteRepository:
    """Graphs, states, prompts, provider keys and chat history in one SQLite file."""

    def __init__(self, path="brain.db"):
        self.path = path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        # The in-memory database lives as long as its one shared connection
        self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False) if path == ":memory:" else None
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction; file connections are closed afterwards."""
        with self._lock:
            conn = self._memory_conn or sqlite3.connect(self.path)
            try:
                conn.row_factory = sqlite3.Row
                conn.execute("pragma foreign_keys = on")
                with conn:
                    yield conn
            finally:
                if conn is not self._memory_conn:
                    conn.close()

    def save_definition(self, definition: GraphDefinition) -> None:
        graph = definition.graph
        with self._connect() as conn:
            conn.execute(
                """
                insert into graphs (id, user_id, name, child_node_id) values (?, ?, ?, ?)
                on conflict(id) do update set
                    user_id = excluded.user_id,
                    name = excluded.name,
                    child_node_id = excluded.child_node_id
                """,
                (graph.id, graph.user_id, graph.name, graph.child_node_id),
            )
            conn.execute("delete from nodes where graph_id = ?", (graph.id,))
            conn.executemany(
                "insert into nodes (id, graph_id, kind, node_json) values (?, ?, ?, ?)",
                [(node.id, graph.id, node.kind, node.model_dump_json()) for node in definition.nodes],
            )
            # Saving a graph again keeps the values its persistent states have reached
            conn.executemany(
                """
                insert into states (id, graph_id, name, type, persistent, starting_value, current_value, prompt_id)
                values (?, ?, ?, ?, ?, ?, ?, ?)
                on conflict(id) do update set
                    graph_id = excluded.graph_id,
                    name = excluded.name,
                    type = excluded.type,
                    persistent = excluded.persistent,
                    starting_value = excluded.starting_value,
                    current_value = coalesce(excluded.current_value, states.current_value),
                    prompt_id = excluded.prompt_id
                """,
                [
                    (s.id, graph.id, s.name, s.type.value, int(s.persistent), s.starting_value, s.current_value, s.prompt_id)
                    for s in definition.states
                ],
            )
            kept = [s.id for s in definition.states]
            conn.execute(
                f"delete from states where graph_id = ? and id not in ({', '.join('?' * len(kept))})",
                (graph.id, *kept),
            )
        for prompt in definition.prompts:
            self.save_prompt(prompt)
        logger.info(f"Saved graph {graph.id} with {len(definition.nodes)} nodes and {len(definition.states)} states")

    def load_definition(self, graph_id: str) -> GraphDefinition:
        with self._connect() as conn:
            row = conn.execute("select * from graphs where id = ?", (graph_id,)).fetchone()
            if not row:
                raise GraphNotFoundError(f"Graph {graph_id} not found")
            graph = Graph(id=row["id"], user_id=row["user_id"], name=row["name"], child_node_id=row["child_node_id"])
            node_rows = conn.execute("select node_json from nodes where graph_id = ?", (graph_id,)).fetchall()
            state_rows = conn.execute("select * from states where graph_id = ?", (graph_id,)).fetchall()
        nodes = [NODE_ADAPTER.validate_json(r["node_json"]) for r in node_rows]
        states = [self._state_from_row(r) for r in state_rows]
        prompt_ids = {n.prompt_id for n in nodes if getattr(n, "prompt_id", None)}
        prompt_ids |= {s.prompt_id for s in states if s.prompt_id}
        prompts = [p for p in (self.get_prompt(pid) for pid in sorted(prompt_ids)) if p is not None]
        return GraphDefinition(graph=graph, nodes=nodes, states=states, prompts=prompts)

    @staticmethod
    def _state_from_row(row) -> GraphStateRecord:
        return GraphStateRecord(
            id=row["id"],
            graph_id=row["graph_id"],
            name=row["name"],
            type=row["type"],
            persistent=bool(row["persistent"]),
            starting_value=row["starting_value"],
            current_value=row["current_value"],
            prompt_id=row["prompt_id"],
        )

    def list_graphs(self, user_id: Optional[str] = None) -> List[Graph]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute("select * from graphs where user_id = ? order by name", (user_id,)).fetchall()
            else:
                rows = conn.execute("select * from graphs order by name").fetchall()
        return [Graph(id=r["id"], user_id=r["user_id"], name=r["name"], child_node_id=r["child_node_id"]) for r in rows]

    def delete_graph(self, graph_id: str) -> None:
        with self._connect() as conn:
            conn.execute("delete from graphs where id = ?", (graph_id,))

    def write_states(self, states: List[GraphStateRecord]) -> None:
        with self._connect() as conn:
            conn.executemany(
                "update states set current_value = ? where id = ?",
                [(s.current_value, s.id) for s in states],
            )

    def save_prompt(self, prompt: Prompt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                insert into prompts (id, user_id, name, content, is_public, config_json) values (?, ?, ?, ?, ?, ?)
                on conflict(id) do update set
                    user_id = excluded.user_id,
                    name = excluded.name,
                    content = excluded.content,
                    is_public = excluded.is_public,
                    config_json = excluded.config_json
                """,
                (prompt.id, prompt.user_id, prompt.name, prompt.content, int(prompt.is_public),
                 prompt.config.model_dump_json()),
            )

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        with self._connect() as conn:
            row = conn.execute("select * from prompts where id = ?", (prompt_id,)).fetchone()
        if not row:
            return None
        return Prompt(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            content=row["content"],
            is_public=bool(row["is_public"]),
            config=json.loads(row["config_json"]),
        )

    def set_api_key(self, user_id: str, provider: str, api_key: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                insert into api_keys (user_id, provider, api_key) values (?, ?, ?)
                on conflict(user_id, provider) do update set api_key = excluded.api_key
                """,
                (user_id, provider, api_key),
            )

    def get_api_key(self, user_id: str, provider: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "select api_key from api_keys where user_id = ? and provider = ?", (user_id, provider)
            ).fetchone()
        return row["api_key"] if row else None

    def save_message(self, session_id: str, graph_id: str, message: Message) -> None:
        with self._connect() as conn:
            conn.execute(
                "insert into messages (session_id, graph_id, role, content, created_at) values (?, ?, ?, ?, ?)",
                (session_id, graph_id, message.role, message.content, datetime.now(timezone.utc).isoformat()),
            )

    def load_history(self, session_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "select role, content from messages where session_id = ? order by id", (session_id,)
            ).fetchall()
        return [Message(role=r["role"], content=r["content"]) for r in rows]

    def clear_history(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("delete from messages where session_id = ?", (session_id,))
