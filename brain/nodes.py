import logging
from dataclasses import dataclass
from typing import Callable, List, Tuple

from .conditions import next_child, resolve_branch
from .errors import AnalysisParseError, BrainError, MissingPromptError
from .invokers import AnalysisInvoker, PromptInvoker
from .llm import ResponseStream
from .schemas import (
    AnalysisNode, ConditionalNode, GraphDefinition, GraphStateRecord, Halted, HaltReason,
    Prompt, PromptNode, Responding,
)
from .state import WalkState
from .store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class WalkContext:
    """Collaborators shared by every node handler of one walker."""
    definition: GraphDefinition
    store: StateStore
    analysis: AnalysisInvoker
    prompts: PromptInvoker
    on_analysis_error: str = "halt"  # or "skip"


def _halted(reason: HaltReason, node_id, visited: List[str], detail: str = None) -> dict:
    logger.warning(f"Walk halted at {node_id}: {reason.value} {detail or ''}".rstrip())
    return {
        "visited": visited,
        "next_node_id": None,
        "halt": Halted(reason=reason, node_id=node_id, detail=detail, path=visited),
    }


def _advance(node_id: str, child_id, visited: List[str], ctx: WalkContext) -> dict:
    if child_id is None:
        return _halted(HaltReason.DEAD_BRANCH, node_id, visited, "No child on the chosen branch")
    if ctx.definition.node(child_id) is None:
        return _halted(HaltReason.UNKNOWN_NODE, node_id, visited, f"Child {child_id} does not exist")
    if child_id in visited:
        return _halted(HaltReason.CYCLE_DETECTED, node_id, visited, f"Node {child_id} was already visited")
    return {"visited": visited, "next_node_id": child_id}


def analysis_targets(node: AnalysisNode, ctx: WalkContext) -> List[Tuple[GraphStateRecord, Prompt]]:
    if node.state_ids:
        states = [ctx.store.get(state_id) for state_id in node.state_ids]
    else:
        states = [state for state in ctx.store.records() if state.prompt_id]
    targets = []
    for state in states:
        if state is None:
            continue
        prompt = ctx.definition.prompt(node.prompt_id or state.prompt_id)
        if prompt is None:
            raise MissingPromptError(f"State {state.name} has no analysis prompt", node_id=node.id)
        targets.append((state, prompt))
    return targets


def analysis_handler(node: AnalysisNode, ctx: WalkContext) -> Callable[[WalkState], dict]:
    def run(state: WalkState) -> dict:
        visited = state.get("visited", []) + [node.id]
        logger.info(f"Analysis node {node.id} ({node.label})")
        updates = []
        try:
            for target, prompt in analysis_targets(node, ctx):
                try:
                    updates.append(ctx.analysis.analyze(state["messages"], target, prompt))
                except AnalysisParseError as e:
                    if ctx.on_analysis_error != "skip":
                        raise
                    logger.warning(f"Skipping update of {target.name}: {e}")
        except BrainError as e:
            return _halted(e.reason, node.id, visited, str(e))
        # All analyses of the node succeeded; commit them together
        ctx.analysis.apply(ctx.store, updates)
        return _advance(node.id, node.child_id, visited, ctx)
    return run


def conditional_handler(node: ConditionalNode, ctx: WalkContext) -> Callable[[WalkState], dict]:
    def run(state: WalkState) -> dict:
        visited = state.get("visited", []) + [node.id]
        branch = resolve_branch(node, ctx.store)
        logger.info(f"Conditional node {node.id} ({node.label}) took the {branch} branch")
        return _advance(node.id, next_child(node, branch), visited, ctx)
    return run


def prompt_handler(node: PromptNode, ctx: WalkContext) -> Callable[[WalkState], dict]:
    def run(state: WalkState) -> dict:
        visited = state.get("visited", []) + [node.id]
        logger.info(f"Prompt node {node.id} ({node.label})")
        prompt = ctx.definition.prompt(node.prompt_id)
        try:
            reply = ctx.prompts.invoke(state["messages"], prompt, streaming=state.get("stream", False))
        except BrainError as e:
            return _halted(e.reason, node.id, visited, str(e))
        if isinstance(reply, ResponseStream):
            response = Responding(node_id=node.id, prompt_id=prompt.id, stream=reply, path=visited)
        else:
            response = Responding(node_id=node.id, prompt_id=prompt.id, result=reply, path=visited)
        return {"visited": visited, "next_node_id": None, "response": response}
    return run


HANDLERS = {
    "analysis": analysis_handler,
    "conditional": conditional_handler,
    "prompt": prompt_handler,
}


def build_handler(node, ctx: WalkContext) -> Callable[[WalkState], dict]:
    return HANDLERS[node.kind](node, ctx)
