"""
Image generation: one Gemini image per visual slot, through the batch
executor (3 in flight, 2 retries per slot, 1s between batches by default).

A slot that still fails after its retries fails the whole step; slots are
never dropped.
"""

import logging

from ... import gemini_api
from ..batch import BatchItemError, run_in_batches
from ..context import PipelineContext
from ..models import ErrorCode, StepResult, VisualSlot

logger = logging.getLogger(__name__)


async def generate_images(ctx: PipelineContext) -> StepResult:
    plan = ctx.artifacts.visual_plan
    if not plan:
        await ctx.log_event("No visual plan available", level="error")
        return StepResult.fail(ErrorCode.IMAGE_GEN, "Visual plan is required for image generation")
    if not plan.slots:
        await ctx.log_event("No visual slots to process", level="error")
        return StepResult.fail(ErrorCode.IMAGE_GEN, "Visual plan has no slots")

    settings = ctx.settings
    existing = {
        (asset.get("meta") or {}).get("slot_id"): asset["path"]
        for asset in await ctx.store.list_assets(ctx.job_id, "image")
        if asset.get("path")
    }
    reused = sum(1 for slot in plan.slots if slot.id in existing)
    if reused:
        await ctx.log_event(f"Reusing {reused} existing image(s)")
    await ctx.log_event(f"Generating {len(plan.slots) - reused} images")

    async def _generate(slot: VisualSlot, index: int) -> str:
        if slot.id in existing:
            return existing[slot.id]
        image = await gemini_api.generate_image(
            ctx.http, settings.gemini_api_key, settings.gemini_image_model, slot.prompt,
        )
        ctx.cost_tracker.track_gemini_image(settings.gemini_image_model)
        path = await ctx.upload(f"{ctx.base_path}/images/{slot.id}.png", image, "image/png")
        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "image", path,
            meta={"slot_id": slot.id, "prompt": slot.prompt, "index": index},
        )
        return path

    async def _on_batch(batch_no: int, total: int, size: int) -> None:
        await ctx.log_event(f"Processing batch {batch_no}/{total} ({size} images)")

    async def _on_retry(index: int, attempt: int, error: BaseException) -> None:
        await ctx.log_event(
            f"Failed to generate image {index + 1} (attempt {attempt}), retrying...",
            level="warn",
        )

    try:
        image_paths = await run_in_batches(
            plan.slots,
            _generate,
            batch_size=settings.image_batch_size,
            max_retries=settings.image_max_retries,
            batch_delay=settings.image_batch_delay_seconds,
            on_batch=_on_batch,
            on_retry=_on_retry,
            sleep=ctx.sleep,
        )
    except BatchItemError as e:
        slot_ids = [plan.slots[index].id for index, _ in e.failures]
        return StepResult.fail(
            ErrorCode.IMAGE_GEN,
            f"Failed to generate image(s) {', '.join(slot_ids)} after {e.attempts} attempt(s): {e.failures[0][1]}",
            details={"failed_slots": slot_ids},
        )
    except Exception as e:
        return StepResult.fail(ErrorCode.IMAGE_GEN, str(e) or "Unknown error generating images")

    await ctx.log_event(f"Successfully generated {len(image_paths)} images")
    return StepResult.ok({"image_paths": image_paths})
