"""
Voice generation: one TTS clip per script section, joined into a single
narration track.

Idempotent: a job that already has an `audio` asset reuses it instead of
paying for TTS again.
"""

import logging

from ... import openai_api
from ..batch import run_in_batches
from ..context import PipelineContext
from ..models import ErrorCode, StepResult
from .script import word_count, words_to_ms

logger = logging.getLogger(__name__)


def join_mp3(clips: list[bytes]) -> bytes:
    """MP3 is frame based, so sequential clips concatenate into one playable stream."""
    if not clips:
        raise ValueError("No audio clips to join")
    return b"".join(clips)


async def generate_voice(ctx: PipelineContext) -> StepResult:
    await ctx.heartbeat()

    existing = await ctx.store.find_asset(ctx.job_id, "audio")
    if existing and existing.get("path"):
        await ctx.log_event("Narration already exists, skipping.")
        return StepResult.ok({
            "narration_path": existing["path"],
            "narration_duration_ms": (existing.get("meta") or {}).get("duration_ms", 0),
        })

    script = ctx.artifacts.script
    if not script or not script.sections:
        await ctx.log_event("No script available", level="error")
        return StepResult.fail(ErrorCode.TTS, "No script available for voice generation")

    settings = ctx.settings
    sections = script.sections
    try:
        await ctx.log_event(f"Generating audio for {len(sections)} sections...")

        async def _synthesize(section, index: int) -> tuple[str, bytes]:
            audio = await openai_api.synthesize_speech(
                ctx.http,
                settings.openai_api_key,
                settings.openai_tts_model,
                settings.openai_tts_voice,
                section.narration_text,
            )
            ctx.cost_tracker.track_openai_tts(settings.openai_tts_model, len(section.narration_text))
            path = await ctx.upload(f"{ctx.base_path}/audio/section_{index:03d}.mp3", audio, "audio/mpeg")
            return path, audio

        async def _on_batch(batch_no: int, total: int, size: int) -> None:
            await ctx.heartbeat()

        clips = await run_in_batches(
            sections,
            _synthesize,
            batch_size=settings.image_batch_size,
            max_retries=settings.image_max_retries,
            batch_delay=settings.image_batch_delay_seconds,
            on_batch=_on_batch,
            sleep=ctx.sleep,
        )

        section_paths = [path for path, _ in clips]
        # Estimated at the narration pace (~150 words/min)
        duration_ms = sum(words_to_ms(word_count(s.narration_text)) for s in sections)

        narration_path = await ctx.upload(
            f"{ctx.base_path}/audio/narration.mp3",
            join_mp3([audio for _, audio in clips]),
            "audio/mpeg",
        )
        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "audio", narration_path,
            meta={"duration_ms": duration_ms, "sections": len(section_paths)},
        )
        await ctx.log_event(f"Voice generation complete: {round(duration_ms / 1000)}s total")

        return StepResult.ok({
            "narration_path": narration_path,
            "narration_duration_ms": duration_ms,
            "section_audio_paths": section_paths,
        })

    except Exception as e:
        return StepResult.fail(ErrorCode.TTS, str(e) or "Unknown error generating voice")
