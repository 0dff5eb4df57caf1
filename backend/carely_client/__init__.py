from .calendar import build_calendar_event, parse_recommended_date
from .handlers import FollowUpHandler, InteractiveToolHandler, LocationHandler, Resolution, default_handlers
from .session import ChatSession
from .state_machine import InteractiveToolStateMachine, PendingResolution, RecordedOutput
from .transport import ChatTransport
from .turn_queue import TurnQueue

__all__ = [
    "ChatSession",
    "ChatTransport",
    "FollowUpHandler",
    "InteractiveToolHandler",
    "InteractiveToolStateMachine",
    "LocationHandler",
    "PendingResolution",
    "RecordedOutput",
    "Resolution",
    "TurnQueue",
    "build_calendar_event",
    "default_handlers",
    "parse_recommended_date",
]
