"""Instance lifecycle: state machine, progress protocol and orchestration."""

from .instance import (
    DeletingPhase,
    Instance,
    InstanceStatus,
    LivePhase,
    MAX_TITLE_LENGTH,
    PausedPhase,
    PendingPhase,
    validate_title,
)
from .manager import InstanceManager
from .progress import InitProgress, ProgressStream, STAGE_MESSAGES, StartStage

__all__ = [
    "DeletingPhase",
    "InitProgress",
    "Instance",
    "InstanceManager",
    "InstanceStatus",
    "LivePhase",
    "MAX_TITLE_LENGTH",
    "PausedPhase",
    "PendingPhase",
    "ProgressStream",
    "STAGE_MESSAGES",
    "StartStage",
    "validate_title",
]
