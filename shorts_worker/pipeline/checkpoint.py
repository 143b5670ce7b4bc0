"""
Checkpoint store: save & resume.

A checkpoint is a snapshot of the run's artifacts and progress written to
`jobs.checkpoint_state`. It lets a crashed or manually retried job pick up
without redoing the expensive stages. It is cleared on READY and kept on
FAILED so a later retry can use it.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from .models import (
    CheckpointState,
    JobStatus,
    RetryOptions,
    STATUS_ORDER,
    status_index,
)

logger = logging.getLogger(__name__)

# Partial recovery is only offered once image generation has completed.
CHECKPOINT_THRESHOLD_STEP = JobStatus.IMAGE_GEN


class CheckpointStore:
    """Reads and writes `jobs.checkpoint_state` through the job store."""

    def __init__(self, store):
        self._store = store

    async def save(self, ctx, completed_step: JobStatus) -> CheckpointState:
        state = CheckpointState(
            last_completed_step=completed_step,
            artifacts=ctx.artifacts.model_copy(deep=True),
            progress=ctx.progress,
        )
        await self._store.update_job(ctx.job_id, {
            "checkpoint_state": state.model_dump(mode="json"),
        })
        await self._store.insert_event(ctx.job_id, completed_step.value, "Checkpoint saved")
        logger.info(f"[{ctx.job_id}] Checkpoint saved after {completed_step.value}")
        return state

    async def load(self, job_id: str) -> Optional[CheckpointState]:
        job = await self._store.get_job(job_id)
        if not job:
            return None
        return parse_checkpoint(job.get("checkpoint_state"))

    async def clear(self, job_id: str) -> None:
        await self._store.update_job(job_id, {"checkpoint_state": None})
        logger.info(f"[{job_id}] Checkpoint cleared")


def parse_checkpoint(raw) -> Optional[CheckpointState]:
    """Validate a stored checkpoint. Unreadable snapshots count as absent."""
    if not raw:
        return None
    try:
        return CheckpointState.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring unreadable checkpoint: {e}")
        return None


def can_retry_from_checkpoint(checkpoint: Optional[CheckpointState]) -> bool:
    if checkpoint is None:
        return False
    return status_index(checkpoint.last_completed_step) >= status_index(CHECKPOINT_THRESHOLD_STEP)


def get_next_step_from_checkpoint(checkpoint: Optional[CheckpointState]) -> Optional[JobStatus]:
    """Stage that follows the checkpoint, SCRIPTING without one, None when complete."""
    if checkpoint is None:
        return JobStatus.SCRIPTING

    next_index = status_index(checkpoint.last_completed_step) + 1
    if next_index <= 0 or next_index >= len(STATUS_ORDER):
        return None
    return STATUS_ORDER[next_index]


def get_retry_options(checkpoint: Optional[CheckpointState]) -> RetryOptions:
    if not can_retry_from_checkpoint(checkpoint):
        return RetryOptions(
            can_retry_from_checkpoint=False,
            message=(
                "This job requires a full retry from the beginning. "
                "No checkpoint is available for partial recovery."
            ),
        )

    next_step = get_next_step_from_checkpoint(checkpoint)
    artifacts = checkpoint.artifacts
    saved = []
    if artifacts.image_paths:
        saved.append(f"{len(artifacts.image_paths)} images were generated successfully")
    if artifacts.narration_path:
        saved.append("voice narration was created")

    message = f"Your video can be retried from the {next_step.value} step."
    if saved:
        message += f" {' and '.join(saved).capitalize()}."
    message += " You won't be charged again for the completed steps."

    return RetryOptions(can_retry_from_checkpoint=True, next_step=next_step, message=message)
