"""tmux session control and activity monitoring."""

from .monitor import Activity, ActivityReading, StatusMonitor, prompt_marker_for
from .session import Session, SessionController, session_name_for

__all__ = [
    "Activity",
    "ActivityReading",
    "Session",
    "SessionController",
    "StatusMonitor",
    "prompt_marker_for",
    "session_name_for",
]
