"""
Completion notice: tells the web app the job is READY so it can email the
user. Credits are already finalized by the time this runs.
"""

import logging

from ..context import PipelineContext
from ..credits import compute_final_credits
from ..models import ErrorCode, StepResult

logger = logging.getLogger(__name__)


def format_duration(duration_ms) -> str:
    seconds_total = (duration_ms or 0) // 1000
    return f"{seconds_total // 60}:{seconds_total % 60:02d}"


async def notify_complete(ctx: PipelineContext) -> StepResult:
    settings = ctx.settings
    app_url = settings.app_url.rstrip("/")
    payload = {
        "job_id": ctx.job_id,
        "user_id": ctx.user_id,
        "project_id": ctx.project_id,
        "status": "READY",
        "project_title": ctx.project.title or "Your Video",
        "duration": format_duration(ctx.artifacts.narration_duration_ms),
        "credits": compute_final_credits(ctx.artifacts.narration_duration_ms),
        "download_url": f"{app_url}/api/download/{ctx.job_id}" if ctx.artifacts.video_path else "",
    }

    try:
        response = await ctx.http.post(
            f"{app_url}/api/internal/job-status-email",
            headers={"Authorization": f"Bearer {settings.worker_shared_secret}"},
            json=payload,
            timeout=15,
        )
        response.raise_for_status()
    except Exception as e:
        logger.error(f"[{ctx.job_id}] Completion notice failed: {e}")
        return StepResult.fail(ErrorCode.NOTIFY_COMPLETE, f"Completion notice failed: {e}")

    logger.info(f"[{ctx.job_id}] Completion notice sent")
    return StepResult.ok()
