from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StateType(str, Enum):
    NUMBER = "NUMBER"
    TEXT = "TEXT"
    BOOLEAN = "BOOLEAN"


class Operator(str, Enum):
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    MORE_THAN = "MORE_THAN"
    MORE_THAN_OR_EQUAL_TO = "MORE_THAN_OR_EQUAL_TO"
    LESS_THAN = "LESS_THAN"
    LESS_THAN_OR_EQUAL_TO = "LESS_THAN_OR_EQUAL_TO"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"


OPERATORS_BY_TYPE = {
    StateType.NUMBER: {
        Operator.EQUALS, Operator.NOT_EQUALS,
        Operator.MORE_THAN, Operator.MORE_THAN_OR_EQUAL_TO,
        Operator.LESS_THAN, Operator.LESS_THAN_OR_EQUAL_TO,
    },
    StateType.TEXT: {Operator.EQUALS, Operator.NOT_EQUALS, Operator.CONTAINS, Operator.NOT_CONTAINS},
    StateType.BOOLEAN: {Operator.EQUALS, Operator.NOT_EQUALS},
}

# Value a state falls back to when it has no starting value
TYPE_DEFAULTS = {
    StateType.NUMBER: "0",
    StateType.TEXT: "",
    StateType.BOOLEAN: "false",
}


class Combinator(str, Enum):
    AND = "AND"
    OR = "OR"


class ModelConfig(BaseModel):
    """LLM settings attached to a prompt."""
    model_config = ConfigDict(protected_namespaces=())

    provider: Literal["openai", "google"] = "openai"
    model: str = "gpt-4o"
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, gt=0)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    frequency_penalty: Optional[float] = Field(None, ge=-2, le=2)
    presence_penalty: Optional[float] = Field(None, ge=-2, le=2)


class Prompt(BaseModel):
    """Reusable prompt content, shared between prompt nodes and state analysis."""
    id: str
    name: str = ""
    content: str
    user_id: Optional[str] = None
    is_public: bool = False
    config: ModelConfig = Field(default_factory=ModelConfig)


class GraphStateRecord(BaseModel):
    """A named, typed value scoped to a graph."""
    id: str
    graph_id: str
    name: str
    type: StateType = StateType.NUMBER
    persistent: bool = False
    starting_value: Optional[str] = None
    current_value: Optional[str] = None
    prompt_id: Optional[str] = None  # analysis prompt

    @property
    def default_value(self) -> str:
        if self.starting_value:
            return self.starting_value
        return TYPE_DEFAULTS[self.type]


class Position(BaseModel):
    x: float = 0
    y: float = 0


class BaseNode(BaseModel):
    id: str
    graph_id: str
    label: str = ""
    position: Position = Field(default_factory=Position)


class AnalysisNode(BaseNode):
    kind: Literal["analysis"] = "analysis"
    child_id: Optional[str] = None
    state_ids: List[str] = Field(default_factory=list)  # empty: every state with an analysis prompt
    prompt_id: Optional[str] = None


class Condition(BaseModel):
    state_id: str
    operator: Operator
    value: str


class ConditionalNode(BaseNode):
    kind: Literal["conditional"] = "conditional"
    true_child_id: Optional[str] = None
    false_child_id: Optional[str] = None
    combinator: Combinator = Combinator.AND
    conditions: List[Condition] = Field(default_factory=list)


class PromptNode(BaseNode):
    kind: Literal["prompt"] = "prompt"
    prompt_id: str


Node = Annotated[Union[AnalysisNode, ConditionalNode, PromptNode], Field(discriminator="kind")]


class Graph(BaseModel):
    id: str
    name: str
    user_id: Optional[str] = None
    child_node_id: Optional[str] = None  # root


class GraphDefinition(BaseModel):
    """Everything the walker needs for one graph."""
    graph: Graph
    nodes: List[Node] = Field(default_factory=list)
    states: List[GraphStateRecord] = Field(default_factory=list)
    prompts: List[Prompt] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_references(self):
        node_ids = set()
        for node in self.nodes:
            if node.graph_id != self.graph.id:
                raise ValueError(f"Node {node.id} belongs to graph {node.graph_id}, not {self.graph.id}")
            if node.id in node_ids:
                raise ValueError(f"Duplicate node id: {node.id}")
            node_ids.add(node.id)
        states = {state.id: state for state in self.states}
        for state in self.states:
            if state.graph_id != self.graph.id:
                raise ValueError(f"State {state.id} belongs to graph {state.graph_id}, not {self.graph.id}")
        prompt_ids = {prompt.id for prompt in self.prompts}
        for state in self.states:
            if state.prompt_id and state.prompt_id not in prompt_ids:
                raise ValueError(f"State {state.name} references unknown prompt {state.prompt_id}")
        for node in self.nodes:
            if isinstance(node, ConditionalNode):
                for condition in node.conditions:
                    state = states.get(condition.state_id)
                    if state is None:
                        raise ValueError(f"Node {node.id} references unknown state {condition.state_id}")
                    if condition.operator not in OPERATORS_BY_TYPE[state.type]:
                        raise ValueError(
                            f"Operator {condition.operator.value} is not valid for {state.type.value} state {state.name}"
                        )
            elif isinstance(node, PromptNode) and node.prompt_id not in prompt_ids:
                raise ValueError(f"Node {node.id} references unknown prompt {node.prompt_id}")
            elif isinstance(node, AnalysisNode):
                unknown = [state_id for state_id in node.state_ids if state_id not in states]
                if unknown:
                    raise ValueError(f"Node {node.id} references unknown states {unknown}")
                if node.prompt_id and node.prompt_id not in prompt_ids:
                    raise ValueError(f"Node {node.id} references unknown prompt {node.prompt_id}")
        return self

    def node(self, node_id: str):
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def prompt(self, prompt_id: Optional[str]) -> Optional[Prompt]:
        for prompt in self.prompts:
            if prompt.id == prompt_id:
                return prompt
        return None


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class StateUpdate(BaseModel):
    state_id: str
    new_value: str


class PromptResult(BaseModel):
    """Whole (non-streamed) reply of a prompt node."""
    text: str
    model: str
    temperature: float


class HaltReason(str, Enum):
    EMPTY_GRAPH = "EMPTY_GRAPH"
    DEAD_BRANCH = "DEAD_BRANCH"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    UNKNOWN_NODE = "UNKNOWN_NODE"
    ANALYSIS_PARSE_ERROR = "ANALYSIS_PARSE_ERROR"
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    UPSTREAM_SERVICE_ERROR = "UPSTREAM_SERVICE_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    MISSING_PROMPT = "MISSING_PROMPT"


class Halted(BaseModel):
    """The walk made no further progress this turn."""
    status: Literal["halted"] = "halted"
    reason: HaltReason
    node_id: Optional[str] = None
    detail: Optional[str] = None
    path: List[str] = Field(default_factory=list)


class Responding(BaseModel):
    """The walk reached a prompt node; either `result` or `stream` is set."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: Literal["responding"] = "responding"
    node_id: str
    prompt_id: str
    result: Optional[PromptResult] = None
    stream: Optional[Any] = Field(None, exclude=True)  # ResponseStream
    path: List[str] = Field(default_factory=list)


WalkResult = Union[Responding, Halted]


class ChatRequest(BaseModel):
    graph_id: str
    session_id: str
    message: str
    user_id: Optional[str] = None
    stream: bool = False


class ChatResponse(BaseModel):
    session_id: str
    status: Literal["responding", "halted"]
    reply: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    reason: Optional[HaltReason] = None
    detail: Optional[str] = None
    path: List[str] = Field(default_factory=list)
    states: Dict[str, str] = Field(default_factory=dict)


class ApiKeyRequest(BaseModel):
    provider: Literal["openai", "google"] = "openai"
    api_key: str = Field(..., min_length=1)
