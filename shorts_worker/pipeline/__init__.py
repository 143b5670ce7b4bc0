"""
Short-Video Pipeline

Drives a job through script → voice → alignment → visual plan → images →
timeline → render → package → notify, with checkpoint resume, credit
refund policy, batched retries, step metrics and per-job cost tracking.
"""

from .models import ErrorCode, JobRow, JobStatus, PipelineArtifacts, StepResult
from .runner import PipelineRunner
from .steps import StepSet, default_steps

__all__ = [
    "PipelineRunner",
    "StepSet",
    "default_steps",
    "ErrorCode",
    "JobRow",
    "JobStatus",
    "PipelineArtifacts",
    "StepResult",
]
