import logging
from typing import Dict, Iterable, Optional

from langgraph.graph import StateGraph, END

from .invokers import AnalysisInvoker, PromptInvoker
from .nodes import WalkContext, build_handler
from .schemas import GraphDefinition, Halted, HaltReason, Message, WalkResult
from .state import WalkState
from .store import StateStore

logger = logging.getLogger(__name__)


class GraphWalker:
    """Walks a brain graph for one conversation turn.

    The definition is compiled once into a LangGraph state graph: every
    brain node becomes a graph node, the entry point routes to the graph's
    root and each handler names the next node through `next_node_id`. A walk
    ends at a prompt node (`Responding`) or wherever it cannot go on
    (`Halted`).
    """

    def __init__(self, definition: GraphDefinition, store: StateStore, llm,
                 on_analysis_error: str = "halt"):
        if on_analysis_error not in ("halt", "skip"):
            raise ValueError(f"on_analysis_error must be 'halt' or 'skip', got {on_analysis_error!r}")
        self.definition = definition
        self.store = store
        self.context = WalkContext(
            definition=definition,
            store=store,
            analysis=AnalysisInvoker(llm),
            prompts=PromptInvoker(llm),
            on_analysis_error=on_analysis_error,
        )
        # LangGraph reserves some characters in node names, so nodes get positional keys
        self.keys: Dict[str, str] = {node.id: f"node_{i}" for i, node in enumerate(definition.nodes)}
        self.app = self._compile() if definition.nodes else None

    def _route(self, state: WalkState) -> str:
        if state.get("halt") is not None or state.get("response") is not None:
            return END
        next_node_id = state.get("next_node_id")
        if next_node_id not in self.keys:
            return END
        return self.keys[next_node_id]

    def _compile(self):
        graph = StateGraph(state_schema=WalkState)
        for node in self.definition.nodes:
            graph.add_node(self.keys[node.id], build_handler(node, self.context))

        path_map = {key: key for key in self.keys.values()}
        path_map[END] = END
        graph.set_conditional_entry_point(self._route, path_map)
        for key in self.keys.values():
            graph.add_conditional_edges(key, self._route, path_map)
        return graph.compile()

    def walk(self, messages: Iterable[Message], stream: bool = False) -> WalkResult:
        root = self.definition.graph.child_node_id
        if root is None:
            return Halted(reason=HaltReason.EMPTY_GRAPH, detail="Graph has no root node")
        if root not in self.keys:
            return Halted(reason=HaltReason.UNKNOWN_NODE, detail=f"Root {root} does not exist")

        inputs = WalkState(messages=list(messages), stream=stream, next_node_id=root, visited=[])
        # Each node runs at most once per walk
        config = {"recursion_limit": len(self.keys) + 5}
        snapshot = self.store.snapshot()
        try:
            result = self.app.invoke(inputs, config=config)
        except BaseException:
            logger.warning(f"Walk of graph {self.definition.graph.id} interrupted; rolling back state updates")
            self.store.restore(snapshot)
            raise

        if result.get("response") is not None:
            return result["response"]
        if result.get("halt") is not None:
            return result["halt"]
        return Halted(reason=HaltReason.DEAD_BRANCH, path=result.get("visited", []))


def build_walker(definition: GraphDefinition, llm, accumulate_all_types: bool = False,
                 on_analysis_error: str = "halt", store: Optional[StateStore] = None) -> GraphWalker:
    store = store or StateStore(definition.graph.id, definition.states, accumulate_all_types=accumulate_all_types)
    return GraphWalker(definition, store, llm, on_analysis_error=on_analysis_error)
