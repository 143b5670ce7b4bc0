"""
Visual planning: groups the aligned narration into image slots.

A new slot starts whenever the running segment group spans at least the
cadence for the project's image density. Every slot carries a prompt built
from its narration text plus the matching script section's keywords.
"""

import logging
import re

from ..context import PipelineContext
from ..models import ErrorCode, Script, StepResult, VisualPlan, VisualSlot, WhisperSegment

logger = logging.getLogger(__name__)

DEFAULT_CADENCE_MS = 8000

DENSITY_CADENCE_MS = {
    "low": 10000,
    "medium": 7000,
    "normal": 7000,
    "high": 4000,
}

STYLE_PREFIXES = {
    "photorealistic": "photorealistic, high quality, cinematic lighting, ",
    "illustration": "digital illustration, artistic, vibrant colors, ",
    "minimalist": "minimalist, clean, simple, modern, ",
    "cinematic": "cinematic, dramatic lighting, film still, 35mm, ",
    "anime": "anime style, manga, Japanese animation, ",
}

SECTIONS_PER_SLOT_GROUP = 3

_NON_WORD = re.compile(r"[^\w\s]")


def cadence_for_density(density) -> int:
    return DENSITY_CADENCE_MS.get(density or "", DEFAULT_CADENCE_MS)


def build_image_prompt(text: str, keywords: list[str], style_preset: str) -> str:
    prefix = STYLE_PREFIXES.get(style_preset, STYLE_PREFIXES["photorealistic"])
    keyword_str = f"{', '.join(keywords)}, " if keywords else ""
    clean_text = _NON_WORD.sub("", text)[:100]
    return f"{prefix}{keyword_str}scene depicting: {clean_text}"


def plan_slots(
    segments: list[WhisperSegment],
    script: Script,
    cadence_ms: int,
    style_preset: str,
) -> list[VisualSlot]:
    """Pure slot planner. Slots are contiguous and cover the whole narration."""
    slots: list[VisualSlot] = []
    slot_start_ms = 0
    texts: list[str] = []

    for position, seg in enumerate(segments):
        seg_end_ms = int(round(seg.end * 1000))
        texts.append(seg.text)

        is_last = position == len(segments) - 1
        if seg_end_ms - slot_start_ms < cadence_ms and not is_last:
            continue

        slot_index = len(slots)
        section = None
        if script.sections:
            section = script.sections[(slot_index // SECTIONS_PER_SLOT_GROUP) % len(script.sections)]
        text = " ".join(texts)

        slots.append(VisualSlot(
            id=f"slot_{slot_index:03d}",
            start_ms=slot_start_ms,
            end_ms=seg_end_ms,
            text=text,
            prompt=build_image_prompt(text, section.visual_keywords if section else [], style_preset),
            style_preset=style_preset,
        ))
        slot_start_ms = seg_end_ms
        texts = []

    return slots


async def plan_visuals(ctx: PipelineContext) -> StepResult:
    script = ctx.artifacts.script
    segments = ctx.artifacts.whisper_segments

    if not script:
        await ctx.log_event("No script available", level="error")
        return StepResult.fail(ErrorCode.VISUAL_PLAN, "Script artifact is required for visual planning")
    if not segments:
        await ctx.log_event("No whisper segments available", level="error")
        return StepResult.fail(ErrorCode.VISUAL_PLAN, "Whisper segments are required for visual planning")

    try:
        density = ctx.project.image_density
        cadence_ms = cadence_for_density(density)
        style = ctx.project.visual_preset_id or "photorealistic"
        await ctx.log_event(f"Using {density or 'default'} image density ({cadence_ms}ms per image)")

        slots = plan_slots(segments, script, cadence_ms, style)
        plan = VisualPlan(slots=slots, total_images=len(slots), cadence_ms=cadence_ms)

        plan_path = await ctx.upload(
            f"{ctx.base_path}/visuals/visual_plan.json",
            plan.model_dump_json(indent=2).encode("utf-8"),
            "application/json",
        )
        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "other", plan_path,
            meta={"total_images": len(slots), "cadence_ms": cadence_ms, "asset_type": "visual_plan"},
        )
        await ctx.log_event(f"Created visual plan with {len(slots)} slots")

        return StepResult.ok({"visual_plan": plan})

    except Exception as e:
        return StepResult.fail(ErrorCode.VISUAL_PLAN, str(e) or "Unknown error planning visuals")
