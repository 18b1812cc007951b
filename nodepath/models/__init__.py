from nodepath.models.conversation import Conversation
from nodepath.models.device_settings import DeviceSettings
from nodepath.models.flow import Flow
from nodepath.models.flow_continuation import FlowContinuation
from nodepath.models.session_lock import SessionLock

__all__ = [
    "Conversation",
    "DeviceSettings",
    "Flow",
    "FlowContinuation",
    "SessionLock",
]
