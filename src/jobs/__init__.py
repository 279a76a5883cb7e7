"""Seguimiento de jobs: máquina de estados, stall, cliente de progreso y lista de jobs."""

from .job_list import JobListTracker
from .progress_client import JobProgressClient, ProgressState, backoff_delay, make_push_channel
from .stall import StallDetector, StallStatus
from .state import JobStateMachine, can_transition, is_meaningful_change

__all__ = [
    "JobListTracker",
    "JobProgressClient",
    "ProgressState",
    "backoff_delay",
    "make_push_channel",
    "StallDetector",
    "StallStatus",
    "JobStateMachine",
    "can_transition",
    "is_meaningful_change",
]
