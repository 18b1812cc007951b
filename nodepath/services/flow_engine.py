"""Processing pass over a conversation's flow graph.

``current_node_id`` on the conversation row is the only record of position.
A pass starts there and walks forward through non-suspending nodes until it
parks (user reply, delay), hands off to a human, reaches a dead end or fails.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from nodepath.config import settings
from nodepath.logging_config import get_logger
from nodepath.services.completion_service import CompletionResponseProcessor
from nodepath.services.continuation_service import schedule_continuation
from nodepath.services.flow_graph import (
    ConditionNode,
    ConditionNoMatch,
    DelayNode,
    FlowGraph,
    ManualNode,
    MediaNode,
    MessageNode,
    Node,
    PassThroughNode,
    PromptNode,
    StageNode,
    StartNode,
    UserReplyNode,
    render_template,
)
from nodepath.services.pass_context import PassContext
from nodepath.services.result import ErrorCode
from nodepath.services.state_machine import ExecutionStatus, coerce_status, complete, fail, reactivate

logger = get_logger("flow_engine")


class PassOutcome(str, Enum):
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    HANDED_OFF = "handed_off"
    IGNORED = "ignored"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class PassResult:
    outcome: PassOutcome
    node_id: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    visited: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error_code is None


def move_to(conversation, node_id: str) -> None:
    if conversation.current_node_id == node_id:
        return
    conversation.last_node_id = conversation.current_node_id
    conversation.current_node_id = node_id


def restart_execution(conversation, graph: FlowGraph) -> None:
    """Put a finished conversation back on the start node."""
    conversation.execution_status = reactivate(coerce_status(conversation.execution_status)).value
    conversation.waiting_for_reply = False
    move_to(conversation, graph.start_node_id)


class FlowStateMachine:
    def __init__(
        self,
        completion: Optional[CompletionResponseProcessor] = None,
        scheduler: Callable[..., object] = schedule_continuation,
        max_steps: Optional[int] = None,
    ):
        self.completion = completion or CompletionResponseProcessor()
        self.scheduler = scheduler
        self.max_steps = max_steps or settings.max_steps_per_pass

    def process_current_node(self, db: Session, conversation, graph: FlowGraph, ctx: PassContext) -> PassResult:
        status = coerce_status(conversation.execution_status)
        if status is ExecutionStatus.COMPLETED and not ctx.resumed_from_delay:
            logger.info(
                "Restarting completed flow execution",
                extra={"context": {"phone": conversation.phone_number, "flow_id": graph.flow_id}},
            )
            restart_execution(conversation, graph)
        elif status is not ExecutionStatus.ACTIVE:
            conversation.execution_status = reactivate(status).value

        node = graph.node(conversation.current_node_id)
        if node is None:
            if conversation.current_node_id:
                logger.warning(
                    f"Node {conversation.current_node_id} not in flow {graph.flow_id}, restarting from start"
                )
            conversation.waiting_for_reply = False
            node = graph.start_node
            move_to(conversation, node.id)

        result = self._walk(db, conversation, graph, node, ctx)

        logger.info(
            "Flow pass finished",
            extra={
                "context": {
                    "phone": conversation.phone_number,
                    "device_id": conversation.device_id,
                    "outcome": result.outcome.value,
                    "node_id": result.node_id,
                    "visited": result.visited,
                    "sent": ctx.sent,
                    "error_code": result.error_code,
                }
            },
        )
        return result

    def _walk(self, db: Session, conversation, graph: FlowGraph, node: Node, ctx: PassContext) -> PassResult:
        visited: list[str] = []
        entry = True

        if conversation.waiting_for_reply and not isinstance(node, UserReplyNode):
            conversation.waiting_for_reply = False

        for _ in range(self.max_steps):
            visited.append(node.id)
            move_to(conversation, node.id)

            match node:
                case StartNode() | PassThroughNode():
                    pass

                case MessageNode(text=message):
                    rendered = render_template(message, self._variables(conversation))
                    if rendered.strip():
                        ctx.deliver(text=rendered)
                    else:
                        logger.warning(f"Message node {node.id} has no text")

                case MediaNode(url=url, caption=caption):
                    if url:
                        ctx.deliver(text=caption or None, media_url=url)
                    else:
                        logger.warning(f"Media node {node.id} has no url")

                case StageNode(stage=stage):
                    if stage:
                        conversation.stage = stage

                case DelayNode(seconds=seconds):
                    if entry and ctx.resumed_from_delay:
                        pass
                    elif entry:
                        # inbound message while the timer is pending
                        return PassResult(PassOutcome.IGNORED, node.id, visited=visited)
                    elif graph.next_node(node.id) is None:
                        return self._complete(conversation, node, visited)
                    else:
                        self.scheduler(
                            db,
                            phone_number=conversation.phone_number,
                            device_id=conversation.device_id,
                            node_id=node.id,
                            user_input=ctx.user_input,
                            delay_seconds=seconds,
                            now=ctx.now,
                        )
                        return PassResult(PassOutcome.SUSPENDED, node.id, visited=visited)

                case UserReplyNode():
                    if entry and conversation.waiting_for_reply:
                        conversation.waiting_for_reply = False
                    else:
                        conversation.waiting_for_reply = True
                        return PassResult(PassOutcome.SUSPENDED, node.id, visited=visited)

                case ConditionNode():
                    try:
                        edge = graph.select_condition_edge(node, ctx.user_input)
                    except ConditionNoMatch as exc:
                        conversation.execution_status = fail(coerce_status(conversation.execution_status)).value
                        logger.warning(
                            "No condition matched",
                            extra={"context": {"node_id": node.id, "user_input": ctx.user_input}},
                        )
                        return PassResult(
                            PassOutcome.FAILED, node.id, ErrorCode.CONDITION_NO_MATCH, str(exc), visited=visited
                        )
                    node = graph.nodes[edge.target]
                    entry = False
                    continue

                case PromptNode():
                    result = self.completion.generate_and_dispatch(conversation, node, ctx)
                    if not result.ok:
                        return PassResult(
                            PassOutcome.ABORTED, node.id, result.error_code, result.error, visited=visited
                        )

                case ManualNode():
                    conversation.human = 1
                    successor = graph.next_node(node.id)
                    if successor is not None:
                        move_to(conversation, successor.id)
                    else:
                        conversation.execution_status = complete(coerce_status(conversation.execution_status)).value
                    return PassResult(PassOutcome.HANDED_OFF, conversation.current_node_id, visited=visited)

                case _:
                    raise TypeError(f"Unhandled node variant {type(node).__name__}")

            successor = graph.next_node(node.id)
            if successor is None:
                return self._complete(conversation, node, visited)
            node = successor
            entry = False

        conversation.execution_status = fail(coerce_status(conversation.execution_status)).value
        logger.error(
            "Flow pass exceeded step limit",
            extra={"context": {"phone": conversation.phone_number, "visited": visited[-10:]}},
        )
        return PassResult(
            PassOutcome.FAILED, conversation.current_node_id, ErrorCode.STEP_LIMIT, "Step limit exceeded", visited=visited
        )

    @staticmethod
    def _complete(conversation, node: Node, visited: list[str]) -> PassResult:
        conversation.execution_status = complete(coerce_status(conversation.execution_status)).value
        conversation.waiting_for_reply = False
        return PassResult(PassOutcome.COMPLETED, node.id, visited=visited)

    @staticmethod
    def _variables(conversation) -> dict:
        return {
            "name": conversation.prospect_name or "",
            "phone": conversation.phone_number,
            "stage": conversation.stage or "",
            "device_id": conversation.device_id,
        }
