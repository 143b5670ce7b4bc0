"""
Output moderation: scans generated narration and image prompts.

Runs after SCRIPTING and again after VISUAL_PLAN. Any flagged item fails
the job with ERR_MODERATION. If the moderation API itself errors we fail
closed: content that cannot be verified is not rendered.
"""

import logging

from ... import openai_api
from ..context import PipelineContext
from ..models import ErrorCode, StepResult

logger = logging.getLogger(__name__)


def collect_texts(artifacts) -> list[tuple[str, str, str]]:
    """(kind, id, text) for everything that will be shown or rendered."""
    items = []
    if artifacts.script:
        for section in artifacts.script.sections:
            if section.narration_text:
                items.append(("script", section.id, section.narration_text))
    if artifacts.visual_plan:
        for slot in artifacts.visual_plan.slots:
            if slot.prompt:
                items.append(("image_prompt", slot.id, slot.prompt))
    return items


async def moderate_output(ctx: PipelineContext) -> StepResult:
    if ctx.settings.moderation_bypass:
        logger.info(f"[{ctx.job_id}] Moderation bypassed")
        return StepResult.ok()

    items = collect_texts(ctx.artifacts)
    if not items:
        return StepResult.ok()

    await ctx.log_event("Moderating generated content...")
    for kind, item_id, text in items:
        try:
            flagged = await openai_api.moderate(ctx.http, ctx.settings.openai_api_key, text)
        except Exception as e:
            logger.error(f"[{ctx.job_id}] Moderation call failed for {kind} {item_id}: {e}")
            return StepResult.fail(
                ErrorCode.MODERATION,
                "Unable to verify content safety. Please try again later.",
                details={"original_error": str(e)},
            )

        if flagged is not None:
            logger.warning(f"[{ctx.job_id}] Content flagged: {kind} {item_id} {flagged}")
            await ctx.log_event(f"Content policy violation detected in {kind}", level="error")
            return StepResult.fail(
                ErrorCode.MODERATION,
                f"Generated content violates content policy. Prohibited categories: {', '.join(flagged)}",
                details={"violation_type": kind, "item_id": item_id, "categories": flagged},
            )

    await ctx.log_event("Content moderation passed")
    return StepResult.ok()
