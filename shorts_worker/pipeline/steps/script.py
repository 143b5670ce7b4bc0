"""
Script generation: merged inputs to a sectioned narration script via
OpenAI chat completions in JSON mode.
"""

import logging

from ... import openai_api
from ..context import PipelineContext
from ..models import ErrorCode, Script, ScriptSection, StepResult

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 150

SCRIPT_SYSTEM_PROMPT = """You are a professional scriptwriter for short-form videos.
Create engaging, educational scripts with clear sections.
Each section should be 20-60 seconds when spoken.
Target word count: {target_words} words (approximately {target_minutes} minutes).
Write in a conversational, engaging tone appropriate for the "{niche}" niche."""

SCRIPT_USER_PROMPT = """Create a video script based on this content:

{merged_text}

Return a JSON object with this structure:
{{
  "title": "Video Title",
  "sections": [
    {{
      "id": "section_001",
      "order": 0,
      "headline": "Section Headline",
      "narrationText": "The full narration text for this section...",
      "visualKeywords": ["keyword1", "keyword2"],
      "onScreenText": "Optional on-screen text"
    }}
  ]
}}

Include 5-8 sections. Make the first section a strong hook."""


def word_count(text: str) -> int:
    return len(text.split())


def words_to_ms(words: int) -> int:
    return round(words / WORDS_PER_MINUTE * 60 * 1000)


def parse_script(payload: dict, fallback_title: str) -> Script:
    """Build a Script from the model's JSON, filling ids, order and timings."""
    sections = []
    for idx, raw in enumerate(payload.get("sections") or []):
        narration = raw.get("narrationText") or raw.get("narration_text") or ""
        sections.append(ScriptSection(
            id=raw.get("id") or f"section_{idx:03d}",
            order=raw.get("order", idx),
            headline=raw.get("headline") or "",
            narration_text=narration,
            visual_keywords=raw.get("visualKeywords") or [],
            on_screen_text=raw.get("onScreenText"),
            estimated_duration_ms=words_to_ms(word_count(narration)),
        ))

    total_words = sum(word_count(s.narration_text) for s in sections)
    return Script(
        title=payload.get("title") or fallback_title,
        sections=sections,
        total_word_count=total_words,
        estimated_duration_ms=words_to_ms(total_words),
    )


async def generate_script(ctx: PipelineContext) -> StepResult:
    merged = ctx.artifacts.merged_input_text or ""
    if not merged.strip():
        await ctx.log_event("No merged input text available", level="error")
        return StepResult.fail(ErrorCode.SCRIPT_GEN, "No merged input text available")

    existing = await ctx.store.find_asset(ctx.job_id, "script")
    if existing and existing.get("path"):
        try:
            script = Script.model_validate_json(await ctx.download(existing["path"]))
        except Exception as e:
            logger.warning(f"[{ctx.job_id}] Stored script unreadable, regenerating: {e}")
        else:
            await ctx.log_event("Script already exists, skipping.")
            return StepResult.ok({"script": script})

    settings = ctx.settings
    project = ctx.project
    try:
        await ctx.log_event("Generating script from merged inputs...")
        payload, usage = await openai_api.chat_json(
            ctx.http,
            settings.openai_api_key,
            settings.openai_script_model,
            SCRIPT_SYSTEM_PROMPT.format(
                target_words=project.target_minutes * WORDS_PER_MINUTE,
                target_minutes=project.target_minutes,
                niche=project.niche_preset,
            ),
            SCRIPT_USER_PROMPT.format(merged_text=merged),
        )
        if usage:
            ctx.cost_tracker.track_openai_completion(
                settings.openai_script_model,
                usage.get("prompt_tokens", 0),
                usage.get("completion_tokens", 0),
            )

        script = parse_script(payload, project.title)
        if not script.sections:
            return StepResult.fail(ErrorCode.SCRIPT_GEN, "Generated script has no sections")

        script_path = f"{ctx.base_path}/script/script.json"
        await ctx.upload(script_path, script.model_dump_json(indent=2).encode("utf-8"), "application/json")
        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "script", script_path,
            meta={"sections": len(script.sections), "word_count": script.total_word_count},
        )

        logger.info(f"[{ctx.job_id}] Script: {len(script.sections)} sections, {script.total_word_count} words")
        return StepResult.ok({"script": script})

    except Exception as e:
        return StepResult.fail(ErrorCode.SCRIPT_GEN, str(e) or "Unknown error generating script")
