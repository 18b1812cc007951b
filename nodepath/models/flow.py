from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.sql import func

from nodepath.database import Base


class Flow(Base):
    __tablename__ = "chatbot_flows"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    niche = Column(Text)
    device_id = Column(Text, nullable=False, index=True)
    nodes = Column(JSONB, nullable=False, default=list)
    edges = Column(JSONB, nullable=False, default=list)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
