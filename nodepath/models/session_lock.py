from sqlalchemy import Column, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP

from nodepath.database import Base


class SessionLock(Base):
    __tablename__ = "session_locks"

    phone_number = Column(Text, primary_key=True)
    device_id = Column(Text, primary_key=True)
    locked_at = Column(TIMESTAMP(timezone=True), nullable=False)
