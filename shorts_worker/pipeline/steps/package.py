"""
Packaging: a downloadable zip of everything the job produced, with a
manifest describing it.
"""

import json
import logging
import zipfile
from io import BytesIO
from typing import Optional

from ..context import PipelineContext
from ..models import ErrorCode, PipelineArtifacts, StepResult, now_utc

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0"


def build_manifest(ctx: PipelineContext) -> dict:
    artifacts = ctx.artifacts
    script = artifacts.script
    return {
        "version": MANIFEST_VERSION,
        "job_id": ctx.job_id,
        "project_id": ctx.project_id,
        "created_at": now_utc().isoformat(),
        "video": {"path": artifacts.video_path},
        "audio": {"path": artifacts.narration_path, "duration_ms": artifacts.narration_duration_ms},
        "captions": {"srt_path": artifacts.captions_srt_path},
        "images": [
            {"slot_id": slot.id, "path": path}
            for slot, path in zip(
                artifacts.visual_plan.slots if artifacts.visual_plan else [],
                artifacts.image_paths or [],
            )
        ],
        "metadata": {
            "title": script.title if script else ctx.project.title,
            "niche": ctx.project.niche_preset,
        },
    }


def archive_entries(artifacts: PipelineArtifacts) -> list[tuple[str, str]]:
    """(storage path, name inside the zip) for every file worth shipping."""
    entries: list[tuple[str, Optional[str]]] = [
        (artifacts.video_path, "video.mp4"),
        (artifacts.narration_path, "narration.mp3"),
        (artifacts.captions_srt_path, "captions.srt"),
        (artifacts.thumbnail_path, "thumbnail.jpg"),
    ]
    for idx, path in enumerate(artifacts.image_paths or []):
        entries.append((path, f"images/{idx:03d}.png"))
    return [(path, name) for path, name in entries if path]


async def package_assets(ctx: PipelineContext) -> StepResult:
    if not ctx.artifacts.video_path:
        return StepResult.fail(ErrorCode.PACKAGING, "No rendered video to package")

    try:
        buffer = BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for path, name in archive_entries(ctx.artifacts):
                archive.writestr(name, await ctx.download(path))
            if ctx.artifacts.script:
                archive.writestr("script.json", ctx.artifacts.script.model_dump_json(indent=2))
            archive.writestr("manifest.json", json.dumps(build_manifest(ctx), indent=2))

        data = buffer.getvalue()
        zip_path = await ctx.upload(f"{ctx.output_path}/assets.zip", data, "application/zip")
        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "zip", zip_path,
            meta={"size_bytes": len(data)},
        )
    except Exception as e:
        return StepResult.fail(ErrorCode.PACKAGING, str(e) or "Unknown error packaging assets")

    await ctx.log_event(f"Packaged assets ({len(data)} bytes)")
    return StepResult.ok({"zip_path": zip_path})
