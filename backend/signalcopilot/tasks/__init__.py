"""Background job execution for the signal pipeline."""
from .queue import JobHandle, JobStatus, TaskQueue
from .jobs import register_default_handlers
from .scheduler import create_scheduler, start_scheduler, stop_scheduler

__all__ = [
    "JobHandle",
    "JobStatus",
    "TaskQueue",
    "register_default_handlers",
    "create_scheduler",
    "start_scheduler",
    "stop_scheduler",
]
