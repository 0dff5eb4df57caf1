from .core_tools import HOTLINES, CarelyToolset, register_tools
from .interactive import (
    FOLLOW_UP_OPTIONS,
    GET_USER_LOCATION,
    SCHEDULE_FOLLOW_UP,
    follow_up_skip_output,
    location_skip_output,
)

__all__ = [
    "FOLLOW_UP_OPTIONS",
    "GET_USER_LOCATION",
    "HOTLINES",
    "SCHEDULE_FOLLOW_UP",
    "CarelyToolset",
    "follow_up_skip_output",
    "location_skip_output",
    "register_tools",
]
