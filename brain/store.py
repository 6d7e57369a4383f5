import logging
import math
from typing import Dict, Iterable, List, Optional

from .schemas import GraphStateRecord, StateType, StateUpdate

logger = logging.getLogger(__name__)


def parse_number(value) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if math.isnan(number):
        return None
    return number


def format_number(number: float) -> str:
    if math.isfinite(number) and number.is_integer():
        return str(int(number))
    return str(number)


class StateStore:
    """Current values of a graph's states for one conversation session.

    Persistent NUMBER states accumulate every update into their current
    value; all other states are replaced. Non-persistent states go back to
    their starting value on `reset_non_persistent`, which the session layer
    calls when a new conversation starts.

    `accumulate_all_types=True` keeps the legacy behavior of accumulating
    every persistent state numerically, whatever its type, with
    non-numeric values counted as 0.

    With `resume=True` a persistent state that already carries a stored
    current value starts from it instead of its default.
    """

    def __init__(self, graph_id: str, states: Iterable[GraphStateRecord] = (), accumulate_all_types: bool = False,
                 resume: bool = False):
        self.graph_id = graph_id
        self.accumulate_all_types = accumulate_all_types
        self.resume = resume
        self._states: Dict[str, GraphStateRecord] = {}
        self.load(states)

    def load(self, states: Iterable[GraphStateRecord]) -> List[GraphStateRecord]:
        self._states = {}
        for state in states:
            if state.graph_id != self.graph_id:
                logger.warning(f"Ignoring state {state.id}: belongs to graph {state.graph_id}")
                continue
            if self.resume and state.persistent and state.current_value is not None:
                self._states[state.id] = state.model_copy()
            else:
                self._states[state.id] = state.model_copy(update={"current_value": state.default_value})
        logger.info(f"Loaded {len(self._states)} states for graph {self.graph_id}")
        return self.records()

    def get(self, key: str) -> Optional[GraphStateRecord]:
        """Look a state up by id, then by name."""
        state = self._states.get(key)
        if state is not None:
            return state
        for candidate in self._states.values():
            if candidate.name == key:
                return candidate
        return None

    def records(self) -> List[GraphStateRecord]:
        return list(self._states.values())

    def values(self) -> Dict[str, str]:
        return {state.name: state.current_value for state in self._states.values()}

    def _accumulates(self, state: GraphStateRecord) -> bool:
        if not state.persistent:
            return False
        return self.accumulate_all_types or state.type == StateType.NUMBER

    def apply_updates(self, updates: Iterable[StateUpdate]) -> None:
        for update in updates:
            state = self._states.get(update.state_id)
            if state is None:
                logger.warning(f"Skipping update for unknown state {update.state_id}")
                continue
            if self._accumulates(state):
                current = parse_number(state.current_value) or 0
                added = parse_number(update.new_value) or 0
                new_value = format_number(current + added)
            else:
                new_value = update.new_value
            logger.debug(f"State {state.name}: {state.current_value!r} -> {new_value!r}")
            self._states[state.id] = state.model_copy(update={"current_value": new_value})

    def reset_non_persistent(self) -> None:
        for state_id, state in self._states.items():
            if not state.persistent:
                self._states[state_id] = state.model_copy(update={"current_value": state.default_value})

    def snapshot(self) -> Dict[str, Optional[str]]:
        return {state_id: state.current_value for state_id, state in self._states.items()}

    def restore(self, snapshot: Dict[str, Optional[str]]) -> None:
        for state_id, value in snapshot.items():
            state = self._states.get(state_id)
            if state is not None:
                self._states[state_id] = state.model_copy(update={"current_value": value})
