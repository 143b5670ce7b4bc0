"""
Credit refund policy and credit ledger.

Refund policy:
  - A job that fails before the threshold stage gets its reserved credits back.
  - A job that fails at or after it does not: by then TTS, transcription and
    image generation have been paid for on the user's behalf.

The threshold defaults to IMAGE_GEN and is configurable
(REFUND_THRESHOLD_STAGE). `should_refund` is pure; the ledger calls are the
only side effects and live on `SupabaseCreditLedger`.
"""

import logging
import math

from .models import JobStatus, STATUS_PROGRESS_FLOOR, status_index

logger = logging.getLogger(__name__)

DEFAULT_REFUND_THRESHOLD = JobStatus.IMAGE_GEN
MS_PER_CREDIT = 60_000


def should_refund(
    status: JobStatus,
    progress: int,
    threshold: JobStatus = DEFAULT_REFUND_THRESHOLD,
) -> bool:
    """
    Decide whether a failed job's reserved credits are returned.

    Args:
        status:    Status the job was in when it failed.
        progress:  Progress (0-100) at failure.
        threshold: First stage at which refunds stop.

    Returns:
        True iff the failure happened strictly before `threshold`.
        For FAILED (no stage information) the progress floor of the
        threshold stage decides.
    """
    threshold = JobStatus(threshold)
    if threshold in (JobStatus.QUEUED, JobStatus.FAILED):
        raise ValueError(f"Invalid refund threshold stage: {threshold.value}")

    idx = status_index(status)
    if idx < 0:
        return progress < STATUS_PROGRESS_FLOOR[threshold]
    return idx < status_index(threshold)


def calculate_refund_amount(
    reserved_credits: int,
    status: JobStatus,
    progress: int,
    threshold: JobStatus = DEFAULT_REFUND_THRESHOLD,
) -> int:
    """All-or-nothing: the full reservation, or 0."""
    if reserved_credits <= 0:
        return 0
    return reserved_credits if should_refund(status, progress, threshold) else 0


def compute_final_credits(narration_duration_ms) -> int:
    """One credit per started minute of narration, minimum 1."""
    minutes = math.ceil((narration_duration_ms or 0) / MS_PER_CREDIT)
    return max(1, minutes)


# ── Ledger (Supabase RPC) ────────────────────────────────────────────────────

class SupabaseCreditLedger:
    """Credit release/finalize through the database's credit functions."""

    def __init__(self, client):
        self._sb = client

    async def release_credits(self, job_id: str) -> None:
        self._sb.rpc("release_job_credits", {"p_job_id": job_id}).execute()
        logger.info(f"[{job_id}] Reserved credits released")

    async def finalize_credits(self, user_id: str, job_id: str, final_cost: int) -> None:
        self._sb.rpc("finalize_job_credits", {
            "p_user_id": user_id,
            "p_job_id": job_id,
            "p_final_cost": final_cost,
        }).execute()
        logger.info(f"[{job_id}] Finalized {final_cost} credit(s) for user {user_id}")
