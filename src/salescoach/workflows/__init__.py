"""Background workflows (post-call finalization) and their Redis-backed runner."""

from .finalize import FINALIZE_CALL, FinalizeCallWorkflow
from .runner import WorkflowInstance, WorkflowRunner, WorkflowStep

__all__ = [
    "FINALIZE_CALL",
    "FinalizeCallWorkflow",
    "WorkflowInstance",
    "WorkflowRunner",
    "WorkflowStep",
]
