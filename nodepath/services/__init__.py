from nodepath.services.conversation_service import (
    find_conversation,
    get_device_settings,
    get_flow,
    get_or_create_conversation,
)
from nodepath.services.state_machine import (
    ExecutionStatus,
    InvalidTransitionError,
    can_transition,
    complete,
    fail,
    reactivate,
    transition,
)
