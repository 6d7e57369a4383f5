import logging
import re
from typing import Iterable, List, Optional

from .errors import AnalysisParseError
from .schemas import GraphStateRecord, Message, ModelConfig, Prompt, PromptResult, StateType, StateUpdate
from .store import StateStore, format_number

logger = logging.getLogger(__name__)

# Leading number of a reply, the way parseFloat reads "7", "7.5" or "7 points"
LEADING_NUMBER = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")
ANALYSIS_MAX_TOKENS = 5


def parse_analysis(raw: str, state: GraphStateRecord) -> str:
    text = (raw or "").strip()
    if state.type == StateType.NUMBER:
        match = LEADING_NUMBER.match(text)
        if not match:
            raise AnalysisParseError(f"Invalid score for {state.name}: {raw!r}", state_id=state.id, raw=raw)
        return format_number(float(match.group(1)))
    if state.type == StateType.BOOLEAN:
        lowered = text.lower().rstrip(".")
        if lowered not in ("true", "false"):
            raise AnalysisParseError(f"Invalid boolean for {state.name}: {raw!r}", state_id=state.id, raw=raw)
        return lowered
    if not text:
        raise AnalysisParseError(f"Empty analysis for {state.name}", state_id=state.id, raw=raw)
    return text


class AnalysisInvoker:
    """Scores the conversation into a state with a deterministic LLM call."""

    def __init__(self, llm):
        self.llm = llm

    def analysis_config(self, prompt: Prompt, state: GraphStateRecord) -> ModelConfig:
        update = {"temperature": 0}
        if state.type != StateType.TEXT:
            update["max_tokens"] = ANALYSIS_MAX_TOKENS
        return prompt.config.model_copy(update=update)

    def analyze(self, messages: Iterable[Message], state: GraphStateRecord, prompt: Prompt) -> StateUpdate:
        # The analysis instruction leads the conversation, unlike prompt nodes
        payload = [Message(role="system", content=prompt.content), *messages]
        raw = self.llm.complete(payload, self.analysis_config(prompt, state))
        value = parse_analysis(raw, state)
        logger.info(f"Analysis of {state.name}: {value}")
        return StateUpdate(state_id=state.id, new_value=value)

    def apply(self, store: StateStore, updates: List[StateUpdate]) -> None:
        store.apply_updates(updates)


class PromptInvoker:
    """Produces the reply of a prompt node."""

    def __init__(self, llm):
        self.llm = llm

    @staticmethod
    def build_messages(messages: Iterable[Message], prompt: Prompt) -> List[Message]:
        # Node prompt goes last, after the conversation, as the newest instruction.
        return [*messages, Message(role="system", content=prompt.content)]

    def invoke(self, messages: Iterable[Message], prompt: Prompt, streaming: bool = False,
               config: Optional[ModelConfig] = None):
        config = config or prompt.config
        payload = self.build_messages(messages, prompt)
        if streaming:
            return self.llm.stream(payload, config)
        text = self.llm.complete(payload, config)
        return PromptResult(text=text, model=config.model, temperature=config.temperature)
