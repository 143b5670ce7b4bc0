"""
Timeline assembly: the render service's input document.

Pairs every visual slot with its generated image, attaches narration and
captions, and fixes the output geometry. Pure apart from the upload.
"""

import json
import logging

from ..context import PipelineContext
from ..models import ErrorCode, PipelineArtifacts, StepResult

logger = logging.getLogger(__name__)

TIMELINE_VERSION = 1
FPS = 30

# Vertical output for shorts
RESOLUTIONS = {
    "720p": (720, 1280),
    "1080p": (1080, 1920),
    "4k": (2160, 3840),
}


def build_timeline(artifacts: PipelineArtifacts, title: str, resolution: str = "1080p") -> dict:
    """
    Raises:
        ValueError: a required artifact is missing or images and slots disagree.
    """
    plan = artifacts.visual_plan
    if not plan or not artifacts.image_paths:
        raise ValueError("Visual plan and images are required to build the timeline")
    if len(plan.slots) != len(artifacts.image_paths):
        raise ValueError(
            f"Image count ({len(artifacts.image_paths)}) does not match slot count ({len(plan.slots)})"
        )
    if not artifacts.narration_path:
        raise ValueError("Narration audio is required to build the timeline")

    width, height = RESOLUTIONS.get(resolution, RESOLUTIONS["1080p"])
    duration_ms = artifacts.narration_duration_ms or plan.slots[-1].end_ms

    return {
        "version": TIMELINE_VERSION,
        "title": title,
        "fps": FPS,
        "width": width,
        "height": height,
        "duration_ms": max(duration_ms, plan.slots[-1].end_ms),
        "audio": {"path": artifacts.narration_path},
        "captions": {
            "srt_path": artifacts.captions_srt_path,
            "segments": [
                {
                    "start_ms": int(round(seg.start * 1000)),
                    "end_ms": int(round(seg.end * 1000)),
                    "text": seg.text,
                }
                for seg in artifacts.whisper_segments or []
            ],
        },
        "scenes": [
            {
                "id": slot.id,
                "image_path": image_path,
                "start_ms": slot.start_ms,
                "end_ms": slot.end_ms,
                "text": slot.text,
            }
            for slot, image_path in zip(plan.slots, artifacts.image_paths)
        ],
    }


async def build_timeline_step(ctx: PipelineContext) -> StepResult:
    try:
        timeline = build_timeline(ctx.artifacts, ctx.project.title, ctx.project.target_resolution)
    except ValueError as e:
        await ctx.log_event(str(e), level="error")
        return StepResult.fail(ErrorCode.TIMELINE, str(e))

    try:
        timeline_path = await ctx.upload(
            f"{ctx.base_path}/timeline/timeline.json",
            json.dumps(timeline, indent=2).encode("utf-8"),
            "application/json",
        )
    except Exception as e:
        return StepResult.fail(ErrorCode.TIMELINE, f"Failed to upload timeline: {e}")

    await ctx.log_event(f"Timeline built with {len(timeline['scenes'])} scenes")
    return StepResult.ok({"timeline": timeline, "timeline_path": timeline_path})
