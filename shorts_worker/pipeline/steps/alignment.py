"""
Alignment: Whisper transcription of the narration into timed segments,
plus SRT and WebVTT caption files.

Idempotent: an existing `captions` asset is reused, with the segments
re-read from the stored segments JSON.
"""

import json
import logging

from ... import openai_api
from ..context import PipelineContext
from ..models import ErrorCode, StepResult, WhisperSegment

logger = logging.getLogger(__name__)


def _split_seconds(seconds: float) -> tuple[int, int, int, int]:
    total_ms = int(round(seconds * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, millis = divmod(rest, 1000)
    return hours, minutes, secs, millis


def format_srt_time(seconds: float) -> str:
    h, m, s, ms = _split_seconds(seconds)
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def format_vtt_time(seconds: float) -> str:
    h, m, s, ms = _split_seconds(seconds)
    return f"{h:02d}:{m:02d}:{s:02d}.{ms:03d}"


def build_srt(segments: list[WhisperSegment]) -> str:
    cues = [
        f"{idx}\n{format_srt_time(seg.start)} --> {format_srt_time(seg.end)}\n{seg.text}\n"
        for idx, seg in enumerate(segments, start=1)
    ]
    return "\n".join(cues)


def build_vtt(segments: list[WhisperSegment]) -> str:
    cues = [
        f"{idx}\n{format_vtt_time(seg.start)} --> {format_vtt_time(seg.end)}\n{seg.text}\n"
        for idx, seg in enumerate(segments, start=1)
    ]
    return "WEBVTT\n\n" + "\n".join(cues)


def parse_segments(transcription: dict) -> list[WhisperSegment]:
    return [
        WhisperSegment(id=idx, start=seg["start"], end=seg["end"], text=seg["text"].strip())
        for idx, seg in enumerate(transcription.get("segments") or [])
    ]


async def _reuse_existing(ctx: PipelineContext, asset: dict) -> StepResult:
    segments_path = (asset.get("meta") or {}).get("segments_path")
    segments = ctx.artifacts.whisper_segments
    if not segments and segments_path:
        raw = json.loads(await ctx.download(segments_path))
        segments = [WhisperSegment.model_validate(s) for s in raw.get("segments", [])]
    return StepResult.ok({"whisper_segments": segments, "captions_srt_path": asset["path"]})


async def run_alignment(ctx: PipelineContext) -> StepResult:
    await ctx.heartbeat()

    try:
        existing = await ctx.store.find_asset(ctx.job_id, "captions")
        if existing and existing.get("path"):
            await ctx.log_event("Captions already exist, skipping.")
            return await _reuse_existing(ctx, existing)

        narration_path = ctx.artifacts.narration_path
        if not narration_path:
            await ctx.log_event("No narration audio available", level="error")
            return StepResult.fail(ErrorCode.ALIGNMENT, "No narration audio available")

        settings = ctx.settings
        audio = await ctx.download(narration_path)
        await ctx.log_event("Running Whisper transcription...")
        try:
            transcription = await openai_api.transcribe(
                ctx.http, settings.openai_api_key, settings.openai_whisper_model, audio,
            )
        except Exception as e:
            return StepResult.fail(ErrorCode.WHISPER, f"Whisper transcription failed: {e}")
        await ctx.heartbeat()

        duration_seconds = transcription.get("duration") or 0
        ctx.cost_tracker.track_openai_whisper(settings.openai_whisper_model, duration_seconds)

        segments = parse_segments(transcription)
        if not segments:
            return StepResult.fail(ErrorCode.ALIGNMENT, "Transcription returned no segments")

        base = f"{ctx.base_path}/alignment"
        segments_path = await ctx.upload(
            f"{base}/whisper_segments.json",
            json.dumps({
                "segments": [s.model_dump() for s in segments],
                "duration": segments[-1].end,
            }, indent=2).encode("utf-8"),
            "application/json",
        )
        srt_path = await ctx.upload(f"{base}/captions.srt", build_srt(segments).encode("utf-8"), "text/plain")
        await ctx.upload(f"{base}/captions.vtt", build_vtt(segments).encode("utf-8"), "text/vtt")

        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "captions", srt_path,
            meta={"segment_count": len(segments), "format": "srt", "segments_path": segments_path},
        )
        await ctx.log_event(f"Alignment complete: {len(segments)} segments generated")

        return StepResult.ok({"whisper_segments": segments, "captions_srt_path": srt_path})

    except Exception as e:
        return StepResult.fail(ErrorCode.ALIGNMENT, str(e) or "Unknown error running alignment")
