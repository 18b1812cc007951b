import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.sql import func

from nodepath.database import Base


class FlowContinuation(Base):
    __tablename__ = "flow_continuations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    phone_number = Column(Text, nullable=False)
    device_id = Column(Text, nullable=False)
    node_id = Column(Text, nullable=False)
    user_input = Column(Text)
    status = Column(Text, nullable=False, default="PENDING")
    attempts = Column(Integer, nullable=False, default=0)
    run_after = Column(TIMESTAMP(timezone=True), nullable=False)
    last_error = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
