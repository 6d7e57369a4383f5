from typing import TypedDict, List, Optional
from .schemas import Message, Halted, Responding


class WalkState(TypedDict, total=False):
    messages: List[Message]  # conversation so far, newest last
    stream: bool  # stream the prompt node reply
    next_node_id: Optional[str]  # node the router sends the walk to next
    visited: List[str]  # node ids entered this turn, in order
    halt: Optional[Halted]
    response: Optional[Responding]
