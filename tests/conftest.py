from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from nodepath.services.delivery_service import DeliveryResult
from nodepath.services.flow_graph import FlowGraph
from nodepath.services.pass_context import PassContext

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class RecordingGateway:
    """Stands in for a provider gateway and keeps every send."""

    provider = "recording"

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent: list[dict] = []

    def send(self, recipient, text=None, media_url=None):
        self.sent.append({"recipient": recipient, "text": text, "media_url": media_url})
        if self.delivered:
            return DeliveryResult(True)
        return DeliveryResult(False, "http_500")

    @property
    def texts(self) -> list:
        return [item["text"] for item in self.sent]


def make_conversation(**overrides) -> SimpleNamespace:
    values = {
        "id": "conv-1",
        "phone_number": "628123456789",
        "device_id": "DEV-1",
        "prospect_name": "Ani",
        "flow_id": "flow-1",
        "stage": None,
        "current_node_id": None,
        "last_node_id": None,
        "waiting_for_reply": False,
        "human": 0,
        "last_ai_call_at": None,
        "conv_last": "",
        "conv_current": None,
        "execution_status": "active",
        "updated_at": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def build_graph(nodes: list[tuple], edges: list[tuple], flow_id: str = "flow-1") -> FlowGraph:
    """``nodes`` are (id, type, data) tuples, ``edges`` are (source, target) or (source, target, handle)."""
    raw_nodes = [{"id": node_id, "type": node_type, "data": data or {}} for node_id, node_type, data in nodes]
    raw_edges = []
    for edge in edges:
        raw = {"id": f"e-{edge[0]}-{edge[1]}", "source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            raw["sourceHandle"] = edge[2]
        raw_edges.append(raw)
    return FlowGraph.from_definition(flow_id, raw_nodes, raw_edges)


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def make_ctx(gateway):
    def _make(user_input: str = "", **kwargs) -> PassContext:
        values = {
            "recipient": "628123456789",
            "user_input": user_input,
            "gateway": gateway,
            "device": SimpleNamespace(device_id="DEV-1", api_key_option="openai/gpt-4o-mini", api_key=""),
            "now": NOW,
        }
        values.update(kwargs)
        return PassContext(**values)

    return _make
