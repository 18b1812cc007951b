import uuid

from sqlalchemy import Boolean, Column, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from nodepath.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("phone_number", "device_id", name="uq_conversations_phone_device"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False)
    device_id = Column(Text, nullable=False)
    prospect_name = Column(Text)
    flow_id = Column(Text)
    stage = Column(Text)
    current_node_id = Column(Text)
    last_node_id = Column(Text)
    waiting_for_reply = Column(Boolean, nullable=False, default=False)
    human = Column(Integer, nullable=False, default=0)  # 1 = human override, automation off
    last_ai_call_at = Column("balas", TIMESTAMP(timezone=True))
    conv_last = Column(Text, nullable=False, default="")
    conv_current = Column(Text)
    execution_status = Column(Text, nullable=False, default="active")  # active, completed, failed
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
