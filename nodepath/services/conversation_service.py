from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from nodepath.models import Conversation, DeviceSettings, Flow
from nodepath.services.flow_graph import FlowGraph
from nodepath.services.state_machine import ExecutionStatus


def get_device_settings(db: Session, device_id: str) -> Optional[DeviceSettings]:
    return db.query(DeviceSettings).filter(DeviceSettings.device_id == device_id).first()


def get_flow(db: Session, device_id: str, flow_id: Optional[str] = None) -> Optional[Flow]:
    """Flow by id, else the most recently updated flow of the device."""
    if flow_id:
        flow = db.query(Flow).filter(Flow.id == flow_id).first()
        if flow:
            return flow
    return db.query(Flow).filter(Flow.device_id == device_id).order_by(Flow.updated_at.desc()).first()


def load_graph(flow: Flow, default_delay_seconds: int = 5) -> FlowGraph:
    return FlowGraph.from_definition(
        str(flow.id), flow.nodes or [], flow.edges or [], default_delay_seconds=default_delay_seconds
    )


def find_conversation(db: Session, phone_number: str, device_id: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(Conversation.phone_number == phone_number, Conversation.device_id == device_id)
        .first()
    )


def get_or_create_conversation(
    db: Session,
    phone_number: str,
    device_id: str,
    graph: FlowGraph,
    prospect_name: Optional[str] = None,
) -> Conversation:
    """Find the conversation for the key or create it on the flow's start node."""
    conversation = find_conversation(db, phone_number, device_id)

    if not conversation:
        now = datetime.now(timezone.utc)
        conversation = Conversation(
            phone_number=phone_number,
            device_id=device_id,
            prospect_name=prospect_name,
            flow_id=graph.flow_id,
            current_node_id=graph.start_node_id,
            waiting_for_reply=False,
            human=0,
            conv_last="",
            execution_status=ExecutionStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        db.flush()

    return conversation
