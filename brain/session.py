import logging
import threading
from typing import Callable, Dict, List, Optional

from .graph import GraphWalker
from .schemas import GraphDefinition, Message, Responding, WalkResult
from .store import StateStore

logger = logging.getLogger(__name__)


class ChatSession:
    """One conversation with a brain graph.

    The session owns the graph's state store for as long as it lives, so
    persistent states keep accumulating across conversations while
    non-persistent ones start over on `reset`. Turns are serialized: a turn
    holds the session lock until its walk, including every state update,
    has finished, and a streamed turn holds it until its reply is closed.
    """

    def __init__(self, session_id: str, definition: GraphDefinition, llm, repository=None,
                 accumulate_all_types: bool = False, on_analysis_error: str = "halt"):
        self.session_id = session_id
        self.definition = definition
        self.repository = repository
        # Persistent states pick up where the stored session left off
        self.store = StateStore(definition.graph.id, definition.states, accumulate_all_types=accumulate_all_types,
                                resume=repository is not None)
        self.walker = GraphWalker(definition, self.store, llm, on_analysis_error=on_analysis_error)
        self.messages: List[Message] = repository.load_history(session_id) if repository else []
        self._lock = threading.Lock()

    @property
    def graph_id(self) -> str:
        return self.definition.graph.id

    def _record(self, message: Message) -> None:
        self.messages.append(message)
        if self.repository:
            self.repository.save_message(self.session_id, self.graph_id, message)

    def _record_reply(self, text: str) -> None:
        self._record(Message(role="assistant", content=text))

    def _write_states(self) -> None:
        if self.repository:
            self.repository.write_states(self.store.records())

    def send(self, content: str, stream: bool = False) -> WalkResult:
        """Run one turn.

        A streamed turn keeps the session busy until its stream has been
        read to the end or closed, so the reply is in the history before the
        next turn walks.
        """
        self._lock.acquire()
        release_now = True
        try:
            user_message = Message(role="user", content=content)
            result = self.walker.walk([*self.messages, user_message], stream=stream)
            self._record(user_message)
            if isinstance(result, Responding) and result.stream is None:
                self._record_reply(result.result.text)
            self._write_states()
            if isinstance(result, Responding) and result.stream is not None:
                result.stream.on_complete(self._record_reply)
                result.stream.on_close(self._lock.release)
                release_now = False
            logger.info(f"Session {self.session_id} turn finished: {result.status}")
            return result
        finally:
            if release_now:
                self._lock.release()

    def reset(self) -> None:
        """Start a new conversation."""
        with self._lock:
            self.messages = []
            if self.repository:
                self.repository.clear_history(self.session_id)
            self.store.reset_non_persistent()
            self._write_states()
            logger.info(f"Session {self.session_id} reset")


class SessionManager:
    """Keeps chat sessions alive between requests."""

    def __init__(self, repository, llm_factory: Callable[[Optional[str]], object],
                 accumulate_all_types: bool = False, on_analysis_error: str = "halt"):
        self.repository = repository
        self.llm_factory = llm_factory
        self.accumulate_all_types = accumulate_all_types
        self.on_analysis_error = on_analysis_error
        self._sessions: Dict[str, ChatSession] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.get(session_id)

    def open(self, session_id: str, graph_id: str, user_id: Optional[str] = None) -> ChatSession:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and session.graph_id == graph_id:
                return session
            definition = self.repository.load_definition(graph_id)
            session = ChatSession(
                session_id,
                definition,
                self.llm_factory(user_id),
                repository=self.repository,
                accumulate_all_types=self.accumulate_all_types,
                on_analysis_error=self.on_analysis_error,
            )
            self._sessions[session_id] = session
            return session

    def drop_graph(self, graph_id: str) -> None:
        """Forget sessions of a graph that was edited or deleted."""
        with self._lock:
            for session_id in [sid for sid, s in self._sessions.items() if s.graph_id == graph_id]:
                del self._sessions[session_id]
