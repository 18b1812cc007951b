"""Immutable flow graph built from the stored node/edge JSON.

Each node kind is its own frozen dataclass so the engine can dispatch with a
single ``match`` statement instead of inspecting type strings.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from nodepath.logging_config import get_logger

logger = get_logger("flow_graph")

PROMPT_NODE_TYPES = {"ai_prompt", "advanced_ai_prompt", "prompt"}
USER_REPLY_NODE_TYPES = {"user_reply", "waiting_reply_times"}
CONDITION_RULE_KINDS = {"equals", "contains", "default"}

_TEMPLATE_VAR = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class FlowDefinitionError(Exception):
    pass


class ConditionNoMatch(Exception):
    def __init__(self, node_id: str, user_input: str):
        self.node_id = node_id
        self.user_input = user_input
        super().__init__(f"No condition matched on node {node_id}")


@dataclass(frozen=True)
class Edge:
    id: str
    source: str
    target: str
    handle: Optional[str] = None


@dataclass(frozen=True)
class ConditionRule:
    kind: str  # equals, contains, default; anything else matches as contains
    value: str = ""
    handle: Optional[str] = None
    label: Optional[str] = None

    def matches(self, user_input: str) -> bool:
        normalized = (user_input or "").strip().lower()
        if self.label and (user_input or "").strip() == self.label:
            return True
        expected = (self.value or "").strip().lower()
        if not expected:
            return False
        if self.kind == "equals":
            return normalized == expected
        return expected in normalized


@dataclass(frozen=True)
class Node:
    id: str


@dataclass(frozen=True)
class StartNode(Node):
    pass


@dataclass(frozen=True)
class MessageNode(Node):
    text: str = ""


@dataclass(frozen=True)
class MediaNode(Node):
    url: str = ""
    caption: str = ""


@dataclass(frozen=True)
class ImageNode(MediaNode):
    pass


@dataclass(frozen=True)
class AudioNode(MediaNode):
    pass


@dataclass(frozen=True)
class VideoNode(MediaNode):
    pass


@dataclass(frozen=True)
class DelayNode(Node):
    seconds: int = 5


@dataclass(frozen=True)
class ConditionNode(Node):
    rules: tuple[ConditionRule, ...] = ()


@dataclass(frozen=True)
class StageNode(Node):
    stage: str = ""


@dataclass(frozen=True)
class UserReplyNode(Node):
    pass


@dataclass(frozen=True)
class PromptNode(Node):
    system_prompt: str = ""
    instance: str = ""
    advanced: bool = False


@dataclass(frozen=True)
class ManualNode(Node):
    pass


@dataclass(frozen=True)
class PassThroughNode(Node):
    """Unknown node type; advances without side effects."""

    kind: str = ""


def _first(data: dict[str, Any], *keys: str, default: Any = "") -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


def _parse_seconds(value: Any, default: int) -> int:
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        return default
    return seconds if seconds >= 0 else default


def _parse_rules(node_id: str, raw_rules: Any) -> tuple[ConditionRule, ...]:
    rules = []
    for raw in raw_rules or []:
        if not isinstance(raw, dict):
            continue
        kind = str(raw.get("type") or "contains").lower()
        if kind not in CONDITION_RULE_KINDS:
            logger.warning(
                f"Unknown condition rule type {kind!r} on node {node_id}, matching as contains",
                extra={"context": {"node_id": node_id, "rule_type": kind, "value": raw.get("value")}},
            )
        rules.append(
            ConditionRule(
                kind=kind,
                value=str(raw.get("value") or ""),
                handle=raw.get("id") or raw.get("handle"),
                label=str(raw["label"]) if raw.get("label") not in (None, "") else None,
            )
        )
    return tuple(rules)


def parse_node(raw: dict[str, Any], default_delay_seconds: int = 5) -> Node:
    node_id = str(raw.get("id") or "")
    if not node_id:
        raise FlowDefinitionError("Node without id")
    node_type = str(raw.get("type") or "").strip()
    data = raw.get("data") or {}

    if node_type == "start":
        return StartNode(node_id)
    if node_type == "message":
        return MessageNode(node_id, text=str(_first(data, "message", "text", "content")))
    if node_type == "image":
        return ImageNode(node_id, url=_first(data, "imageUrl", "image", "mediaUrl"), caption=_first(data, "caption"))
    if node_type == "audio":
        return AudioNode(node_id, url=_first(data, "audioUrl", "audio", "mediaUrl"), caption=_first(data, "caption"))
    if node_type == "video":
        return VideoNode(node_id, url=_first(data, "videoUrl", "video", "mediaUrl"), caption=_first(data, "caption"))
    if node_type == "delay":
        raw_delay = _first(data, "delay", "delaySeconds", default=None)
        return DelayNode(node_id, seconds=_parse_seconds(raw_delay, default_delay_seconds))
    if node_type == "condition":
        return ConditionNode(node_id, rules=_parse_rules(node_id, data.get("conditions")))
    if node_type == "stage":
        return StageNode(node_id, stage=str(_first(data, "stage", "label")))
    if node_type in USER_REPLY_NODE_TYPES:
        return UserReplyNode(node_id)
    if node_type in PROMPT_NODE_TYPES:
        return PromptNode(
            node_id,
            system_prompt=str(_first(data, "system_prompt", "systemPrompt", "prompt")),
            instance=str(_first(data, "instance")),
            advanced=node_type == "advanced_ai_prompt",
        )
    if node_type == "manual":
        return ManualNode(node_id)

    logger.warning(f"Unknown node type '{node_type}' on node {node_id}, treating as pass-through")
    return PassThroughNode(node_id, kind=node_type)


def parse_edge(raw: dict[str, Any]) -> Edge:
    data = raw.get("data") or {}
    handle = raw.get("sourceHandle") or data.get("condition") or raw.get("label")
    return Edge(
        id=str(raw.get("id") or f"{raw.get('source')}->{raw.get('target')}"),
        source=str(raw.get("source") or ""),
        target=str(raw.get("target") or ""),
        handle=str(handle) if handle not in (None, "") else None,
    )


@dataclass(frozen=True)
class FlowGraph:
    flow_id: str
    nodes: dict[str, Node]
    edges: tuple[Edge, ...]
    start_node_id: str
    _outgoing: dict[str, tuple[Edge, ...]] = field(default_factory=dict, repr=False)

    @classmethod
    def from_definition(
        cls,
        flow_id: str,
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]],
        default_delay_seconds: int = 5,
    ) -> "FlowGraph":
        parsed_nodes: dict[str, Node] = {}
        for raw in nodes or []:
            node = parse_node(raw, default_delay_seconds=default_delay_seconds)
            parsed_nodes[node.id] = node

        starts = [node.id for node in parsed_nodes.values() if isinstance(node, StartNode)]
        if len(starts) != 1:
            raise FlowDefinitionError(f"Flow {flow_id} must have exactly one start node, found {len(starts)}")

        parsed_edges = tuple(parse_edge(raw) for raw in edges or [])
        outgoing: dict[str, list[Edge]] = {}
        for edge in parsed_edges:
            if edge.target not in parsed_nodes:
                logger.warning(f"Edge {edge.id} in flow {flow_id} points at missing node {edge.target}")
                continue
            outgoing.setdefault(edge.source, []).append(edge)

        return cls(
            flow_id=flow_id,
            nodes=parsed_nodes,
            edges=parsed_edges,
            start_node_id=starts[0],
            _outgoing={source: tuple(items) for source, items in outgoing.items()},
        )

    @property
    def start_node(self) -> Node:
        return self.nodes[self.start_node_id]

    def node(self, node_id: Optional[str]) -> Optional[Node]:
        if not node_id:
            return None
        return self.nodes.get(node_id)

    def outgoing(self, node_id: str) -> tuple[Edge, ...]:
        return self._outgoing.get(node_id, ())

    def next_node(self, node_id: str) -> Optional[Node]:
        """Target of the first outgoing edge, or None at a dead end."""
        edges = self.outgoing(node_id)
        if not edges:
            return None
        return self.nodes[edges[0].target]

    def select_condition_edge(self, node: ConditionNode, user_input: str) -> Edge:
        """Pick the outgoing edge for ``user_input``.

        Rules are tried in list order, skipping ``default`` rules; the first
        match wins. When nothing matches the first ``default`` rule is used.
        A rule maps to the edge carrying its handle, else to the edge at the
        rule's position. Raises ConditionNoMatch when no edge can be chosen.
        """
        edges = self.outgoing(node.id)
        if not edges:
            raise ConditionNoMatch(node.id, user_input)

        for index, rule in enumerate(node.rules):
            if rule.kind == "default":
                continue
            if rule.matches(user_input):
                edge = self._edge_for_rule(edges, rule, index)
                if edge is not None:
                    return edge

        for index, rule in enumerate(node.rules):
            if rule.kind == "default":
                edge = self._edge_for_rule(edges, rule, index)
                if edge is not None:
                    return edge

        raise ConditionNoMatch(node.id, user_input)

    @staticmethod
    def _edge_for_rule(edges: tuple[Edge, ...], rule: ConditionRule, index: int) -> Optional[Edge]:
        if rule.handle:
            for edge in edges:
                if edge.handle == rule.handle:
                    return edge
        if index < len(edges):
            return edges[index]
        return None


def render_template(text: str, variables: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left as-is."""

    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _TEMPLATE_VAR.sub(_replace, text or "")
