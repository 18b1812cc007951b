from sqlalchemy import Column, Text

from nodepath.database import Base


class DeviceSettings(Base):
    __tablename__ = "device_settings"

    device_id = Column(Text, primary_key=True)
    instance = Column(Text)
    provider = Column(Text, nullable=False, default="wablas")  # wablas, whacenter
    api_key = Column(Text)
    api_key_option = Column(Text)  # completion model name
    phone_number = Column(Text)
