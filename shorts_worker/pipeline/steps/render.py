"""
Render: hands the timeline to the render service and polls until the
video is ready.

The service is opaque: submit returns a render id, status polling returns
`status` and, once done, the storage path of the MP4 (or a URL we copy
into our own storage).
"""

import logging

from ..context import PipelineContext
from ..models import ErrorCode, StepResult

logger = logging.getLogger(__name__)

DONE_STATUSES = ("completed", "success", "SUCCESS")
FAILED_STATUSES = ("failed", "error", "FAILED")


async def _submit(ctx: PipelineContext, headers: dict) -> str:
    response = await ctx.http.post(
        f"{ctx.settings.render_service_url}/render",
        headers=headers,
        json={
            "job_id": ctx.job_id,
            "timeline": ctx.artifacts.timeline,
            "timeline_path": ctx.artifacts.timeline_path,
            "output_path": f"{ctx.output_path}/video.mp4",
        },
        timeout=30,
    )
    response.raise_for_status()
    data = response.json()
    render_id = data.get("render_id") or data.get("id")
    if not render_id:
        raise RuntimeError(f"Render submit failed, no render_id: {data}")
    return render_id


async def _store_video(ctx: PipelineContext, record: dict) -> str:
    if record.get("video_path"):
        return record["video_path"]

    video_url = record.get("video_url")
    if not video_url:
        raise RuntimeError(f"Render completed but no video in response: {record}")

    response = await ctx.http.get(video_url, follow_redirects=True, timeout=120)
    response.raise_for_status()
    return await ctx.upload(f"{ctx.output_path}/video.mp4", response.content, "video/mp4")


async def render_video(ctx: PipelineContext) -> StepResult:
    existing = await ctx.store.find_asset(ctx.job_id, "video")
    if existing and existing.get("path"):
        await ctx.log_event("Video already rendered, skipping.")
        return StepResult.ok({"video_path": existing["path"]})

    settings = ctx.settings
    if not ctx.artifacts.timeline:
        return StepResult.fail(ErrorCode.RENDER, "Timeline is required for rendering")
    if not settings.render_service_url:
        return StepResult.fail(ErrorCode.RENDER, "RENDER_SERVICE_URL is not configured")

    headers = {"Authorization": f"Bearer {settings.worker_shared_secret}"}
    try:
        render_id = await _submit(ctx, headers)
        logger.info(f"[{ctx.job_id}] Render submitted: render_id={render_id}")
        await ctx.log_event("Rendering video...")

        for attempt in range(settings.render_max_poll_attempts):
            await ctx.sleep(settings.render_poll_interval_seconds)

            response = await ctx.http.get(
                f"{settings.render_service_url}/render/{render_id}",
                headers=headers,
                timeout=15,
            )
            response.raise_for_status()
            record = response.json()
            status = record.get("status", "")

            logger.info(f"[{ctx.job_id}] Render poll #{attempt + 1}: status={status}")

            if status in DONE_STATUSES:
                video_path = await _store_video(ctx, record)
                await ctx.store.insert_asset(
                    ctx.job_id, ctx.project_id, ctx.user_id, "video", video_path,
                    meta={"render_id": render_id},
                )
                await ctx.log_event("Render complete")
                return StepResult.ok({"video_path": video_path})

            if status in FAILED_STATUSES:
                return StepResult.fail(
                    ErrorCode.RENDER,
                    f"Render failed: {record.get('error') or 'unknown error'}",
                    details={"render_id": render_id},
                )

        return StepResult.fail(
            ErrorCode.RENDER,
            f"Render timed out after {settings.render_max_poll_attempts} polls",
            details={"render_id": render_id},
        )

    except Exception as e:
        return StepResult.fail(ErrorCode.RENDER, str(e) or "Unknown error rendering video")
