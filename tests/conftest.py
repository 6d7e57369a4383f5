import os

os.environ.setdefault("BRAIN_DB_PATH", ":memory:")

import pytest

from brain.llm import ResponseStream
from brain.schemas import (
    AnalysisNode, Condition, ConditionalNode, Graph, GraphDefinition, GraphStateRecord, ModelConfig,
    Prompt, PromptNode,
)


class FakeLLM:
    """Scripted completion service; records every call."""

    def __init__(self, replies=None, chunks=None):
        self.replies = list(replies or [])
        self.chunks = list(chunks or ["Hello", " there"])
        self.calls = []
        self.streams = []

    def complete(self, messages, config):
        self.calls.append(("complete", list(messages), config))
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def stream(self, messages, config):
        self.calls.append(("stream", list(messages), config))
        stream = ResponseStream(iter(self.chunks), model=config.model, temperature=config.temperature)
        self.streams.append(stream)
        return stream


def make_prompt(prompt_id, content=None, **config):
    return Prompt(id=prompt_id, name=prompt_id, content=content or f"{prompt_id} instructions",
                  config=ModelConfig(**config))


def make_state(state_id, type="NUMBER", persistent=False, starting_value=None, prompt_id=None, graph_id="g1"):
    return GraphStateRecord(id=state_id, graph_id=graph_id, name=state_id, type=type, persistent=persistent,
                            starting_value=starting_value, prompt_id=prompt_id)


def branching_definition(x_value="15", analysis=False):
    """root -> [analysis ->] conditional(x > 10) -> P1 / P2"""
    nodes = [
        ConditionalNode(id="cond", graph_id="g1", true_child_id="p1", false_child_id="p2",
                        conditions=[Condition(state_id="x", operator="MORE_THAN", value="10")]),
        PromptNode(id="p1", graph_id="g1", prompt_id="prompt-1"),
        PromptNode(id="p2", graph_id="g1", prompt_id="prompt-2"),
    ]
    root = "cond"
    if analysis:
        nodes.insert(0, AnalysisNode(id="analyze", graph_id="g1", child_id="cond", state_ids=["x"]))
        root = "analyze"
    return GraphDefinition(
        graph=Graph(id="g1", name="branching", child_node_id=root),
        nodes=nodes,
        states=[make_state("x", starting_value=x_value, prompt_id="score")],
        prompts=[make_prompt("prompt-1"), make_prompt("prompt-2"), make_prompt("score", temperature=0.9)],
    )


@pytest.fixture
def fake_llm():
    return FakeLLM()
