"""
PipelineRunner: drives one job through the stages.

  SCRIPTING      ingest (5%) → script (15%) → moderation
  VOICE_GEN      narration (25%), heartbeat while running
  ALIGNMENT      Whisper + captions (40%), heartbeat while running
  VISUAL_PLAN    image slots (50%) → moderation
  IMAGE_GEN      images (55%), checkpoint
  TIMELINE_BUILD timeline (75%) → preview thumbnail (best effort)
  RENDERING      render service (80%), checkpoint
  PACKAGING      zip (95%), tolerated when a video exists
  READY          credits finalized, project marked ready, notify (best effort)

Every run ends in READY or FAILED. `run()` raises only when the FAILED
status itself cannot be written, so the queue redelivers the job instead
of acking it with a stale stage status.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .batch import call_with_retries
from .checkpoint import CheckpointStore, get_next_step_from_checkpoint, parse_checkpoint
from .context import PipelineContext
from .credits import compute_final_credits, should_refund
from .models import (
    CheckpointState,
    ErrorCode,
    JobRow,
    JobStatus,
    ProjectRow,
    StepResult,
    StepStatus,
    now_utc,
)
from .steps import StepSet, default_steps

logger = logging.getLogger(__name__)

UNKNOWN_ERROR_MESSAGE = "An unexpected error occurred while generating your video. Please try again."
TERMINAL_WRITE_RETRIES = 2


# ── Stage table ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Stage:
    name: str
    status: JobStatus
    phases: tuple  # (progress floor, event message, StepSet attribute)
    error_code: ErrorCode
    moderate: bool = False
    heartbeat: bool = False
    checkpoint: bool = False
    preview: bool = False
    tolerate_with_video: bool = False


STAGES = (
    Stage(
        "script", JobStatus.SCRIPTING,
        ((5, "Ingesting project inputs...", "ingest"), (15, "Generating script...", "script")),
        ErrorCode.SCRIPT_GEN, moderate=True,
    ),
    Stage(
        "voice", JobStatus.VOICE_GEN,
        ((25, "Generating voice narration...", "voice"),),
        ErrorCode.TTS, heartbeat=True,
    ),
    Stage(
        "alignment", JobStatus.ALIGNMENT,
        ((40, "Aligning narration with Whisper...", "alignment"),),
        ErrorCode.ALIGNMENT, heartbeat=True,
    ),
    Stage(
        "visual_plan", JobStatus.VISUAL_PLAN,
        ((50, "Planning visual timeline...", "visual_plan"),),
        ErrorCode.VISUAL_PLAN, moderate=True,
    ),
    Stage(
        "images", JobStatus.IMAGE_GEN,
        ((55, "Generating images...", "images"),),
        ErrorCode.IMAGE_GEN, checkpoint=True,
    ),
    Stage(
        "timeline", JobStatus.TIMELINE_BUILD,
        ((75, "Building timeline...", "timeline"),),
        ErrorCode.TIMELINE, preview=True,
    ),
    Stage(
        "render", JobStatus.RENDERING,
        ((80, "Rendering video...", "render"),),
        ErrorCode.RENDER, checkpoint=True,
    ),
    Stage(
        "package", JobStatus.PACKAGING,
        ((95, "Packaging assets...", "package"),),
        ErrorCode.PACKAGING, tolerate_with_video=True,
    ),
)

STAGE_NAMES = [stage.name for stage in STAGES]


def stage_position(status: JobStatus) -> Optional[int]:
    """Index into STAGES for a stage status; None for QUEUED/READY/FAILED."""
    for position, stage in enumerate(STAGES):
        if stage.status == status:
            return position
    return None


def resolve_start(status: JobStatus, checkpoint: Optional[CheckpointState]) -> int:
    """
    Index of the first stage to run.

    QUEUED or no checkpoint: a fresh run from the first stage. Otherwise the
    earlier of the job's own stage and the stage after the checkpoint, so a
    stage whose output is not in the checkpoint is never skipped. FAILED
    jobs resume right after the checkpoint. Returns len(STAGES) when every
    stage is covered.
    """
    if status == JobStatus.QUEUED or checkpoint is None:
        return 0

    next_status = get_next_step_from_checkpoint(checkpoint)
    if next_status is None or next_status == JobStatus.READY:
        after_checkpoint = len(STAGES)
    else:
        after_checkpoint = stage_position(next_status)

    if status == JobStatus.FAILED:
        return after_checkpoint

    current = stage_position(status)
    if current is None:
        return after_checkpoint
    return min(current, after_checkpoint)


# ── Runner ───────────────────────────────────────────────────────────────────

class PipelineRunner:
    """
    Runs jobs against injected collaborators.

    Args:
        store:        Job store (jobs, events, assets, metrics, costs).
        ledger:       Credit ledger with release_credits / finalize_credits.
        object_store: Artifact storage with upload / download.
        settings:     WorkerSettings.
        steps:        StepSet; defaults to the real steps.
        http:         Shared httpx.AsyncClient handed to steps.
        sleep:        Injected into steps for retry/poll delays.
    """

    def __init__(
        self,
        store,
        ledger,
        object_store,
        settings,
        steps: Optional[StepSet] = None,
        http=None,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.ledger = ledger
        self.object_store = object_store
        self.settings = settings
        self.steps = steps or default_steps()
        self.http = http
        self.sleep = sleep
        self.checkpoints = CheckpointStore(store)

    async def run(self, job: JobRow) -> JobStatus:
        """Run a job to READY or FAILED and return the final status."""
        if job.status == JobStatus.READY:
            logger.info(f"[{job.id}] Already READY, nothing to do")
            return JobStatus.READY

        ctx: Optional[PipelineContext] = None
        try:
            project_row = await self.store.get_project(job.project_id)
            ctx = PipelineContext(
                job=job,
                project=ProjectRow.model_validate(project_row) if project_row else ProjectRow(
                    id=job.project_id, user_id=job.user_id,
                ),
                store=self.store,
                object_store=self.object_store,
                settings=self.settings,
                http=self.http,
                sleep=self.sleep,
            )
            ctx.metrics.retry_attempt = job.retry_count

            if project_row is None:
                await self._fail_job(ctx, ErrorCode.INPUT_FETCH.value, "Project not found")
                return JobStatus.FAILED

            start = await self._prepare(ctx)

            for position, stage in enumerate(STAGES):
                if position < start:
                    ctx.metrics.skip_step(stage.name)
                    continue
                if not await self._run_stage(ctx, stage):
                    return JobStatus.FAILED

            await self._complete_job(ctx)
            return JobStatus.READY

        except Exception as e:
            logger.error(f"[{job.id}] Pipeline crashed: {e}", exc_info=True)
            await self._fail_safely(ctx, job, ErrorCode.UNKNOWN.value, UNKNOWN_ERROR_MESSAGE)
            if ctx is not None and ctx.status == JobStatus.READY:
                return JobStatus.READY
            return JobStatus.FAILED

    # ── Setup / resume ───────────────────────────────────────────────────

    async def _prepare(self, ctx: PipelineContext) -> int:
        job = ctx.job
        checkpoint = None if job.status == JobStatus.QUEUED else parse_checkpoint(job.checkpoint_state)
        start = resolve_start(job.status, checkpoint)

        if checkpoint is None:
            await self.store.update_job(job.id, {"started_at": now_utc().isoformat()})
            logger.info(f"[{job.id}] Starting fresh run")
            return start

        ctx.artifacts = checkpoint.artifacts.model_copy(deep=True)
        ctx.progress = max(ctx.progress, checkpoint.progress)
        skipped = STAGE_NAMES[:start]
        resume_at = STAGES[start].status.value if start < len(STAGES) else JobStatus.READY.value

        logger.info(
            f"[{job.id}] Resuming at {resume_at} from checkpoint after "
            f"{checkpoint.last_completed_step.value} (skipping {skipped})"
        )
        await self.store.insert_event(
            job.id, resume_at, f"Resuming from checkpoint at {resume_at}",
            meta={
                "last_completed_step": checkpoint.last_completed_step.value,
                "skipped": skipped,
                "artifacts": ctx.artifacts.present(),
            },
        )
        return start

    # ── Stages ───────────────────────────────────────────────────────────

    async def _run_stage(self, ctx: PipelineContext, stage: Stage) -> bool:
        """Run one stage. Returns False when the job has been failed."""
        ctx.metrics.start_step(stage.name)
        heartbeat = self._start_heartbeat(ctx) if stage.heartbeat else None
        try:
            result = await self._with_timeout(stage, self._stage_body(ctx, stage))
        except Exception as e:
            ctx.metrics.end_step(stage.name, StepStatus.FAILED, ErrorCode.UNKNOWN.value, str(e))
            raise
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

        if not result.success:
            ctx.metrics.end_step(stage.name, StepStatus.FAILED, result.error.code, result.error.message)
            logger.warning(f"[{ctx.job_id}] {stage.status.value} failed: {result.error.code} {result.error.message}")
            await self._fail_job(ctx, result.error.code, result.error.message)
            return False

        ctx.metrics.end_step(stage.name, StepStatus.SUCCESS)

        if stage.checkpoint:
            await self._save_checkpoint(ctx, stage.status)
        if stage.preview:
            await self._run_preview(ctx)
        return True

    async def _stage_body(self, ctx: PipelineContext, stage: Stage) -> StepResult:
        for floor, message, step_name in stage.phases:
            await self._enter(ctx, stage.status, floor, message)
            result = await getattr(self.steps, step_name)(ctx)
            if not result.success:
                if stage.tolerate_with_video and ctx.artifacts.video_path:
                    await ctx.log_event(
                        f"{stage.status.value} failed but video exists, continuing: {result.error.message}",
                        level="warn",
                        meta={"error_code": result.error.code},
                    )
                    return StepResult.ok()
                return result
            ctx.artifacts.merge(result.data)

        if stage.moderate:
            result = await self.steps.moderation(ctx)
            if not result.success:
                return result

        return StepResult.ok()

    async def _with_timeout(self, stage: Stage, body) -> StepResult:
        timeout = self.settings.stage_timeout_seconds
        if not timeout:
            return await body
        try:
            return await asyncio.wait_for(body, timeout=timeout)
        except asyncio.TimeoutError:
            return StepResult.fail(
                stage.error_code,
                f"{stage.status.value} timed out after {timeout:g}s",
            )

    async def _enter(self, ctx: PipelineContext, status: JobStatus, floor: int, message: str) -> None:
        ctx.status = status
        ctx.progress = max(ctx.progress, floor)
        await self.store.update_status(ctx.job_id, status.value, ctx.progress)
        await ctx.log_event(message)

    def _start_heartbeat(self, ctx: PipelineContext) -> Optional[asyncio.Task]:
        interval = self.settings.heartbeat_interval_seconds
        if not interval:
            return None

        async def _beat():
            while True:
                await asyncio.sleep(interval)
                try:
                    await ctx.heartbeat()
                except Exception as e:
                    logger.warning(f"[{ctx.job_id}] Heartbeat failed: {e}")

        return asyncio.create_task(_beat())

    async def _save_checkpoint(self, ctx: PipelineContext, completed: JobStatus) -> None:
        try:
            await self.checkpoints.save(ctx, completed)
        except Exception as e:
            logger.warning(f"[{ctx.job_id}] Checkpoint after {completed.value} not saved: {e}")

    async def _run_preview(self, ctx: PipelineContext) -> None:
        try:
            result = await self.steps.preview(ctx)
        except Exception as e:
            result = StepResult.fail(ErrorCode.PREVIEW, str(e))

        if result.success:
            ctx.artifacts.merge(result.data)
            await ctx.log_event("Preview thumbnail generated")
        else:
            logger.warning(f"[{ctx.job_id}] Preview skipped: {result.error.message}")
            await ctx.log_event(
                f"Preview generation failed: {result.error.message}",
                level="warn",
                meta={"error_code": result.error.code},
            )

    # ── Terminal states ──────────────────────────────────────────────────

    async def _write_terminal(self, ctx: PipelineContext, fields: dict) -> None:
        """Persist a terminal status, retrying transient store errors."""
        await call_with_retries(
            lambda: self.store.update_job(ctx.job_id, fields),
            max_retries=TERMINAL_WRITE_RETRIES,
            sleep=self.sleep,
            label=f"[{ctx.job_id}] {fields['status']} write",
        )

    async def _complete_job(self, ctx: PipelineContext) -> None:
        final_credits = compute_final_credits(ctx.artifacts.narration_duration_ms)

        await self._write_terminal(ctx, {
            "status": JobStatus.READY.value,
            "progress": 100,
            "cost_credits_final": final_credits,
            "finished_at": now_utc().isoformat(),
        })
        ctx.status = JobStatus.READY
        ctx.progress = 100

        await ctx.log_event("Video ready", meta={
            "duration_ms": ctx.artifacts.narration_duration_ms,
            "images_count": len(ctx.artifacts.image_paths or []),
            "final_credits": final_credits,
        })

        try:
            await self.ledger.finalize_credits(ctx.user_id, ctx.job_id, final_credits)
        except Exception as e:
            logger.error(f"[{ctx.job_id}] Credit finalization failed: {e}", exc_info=True)
            await ctx.log_event(
                f"Credit finalization failed: {e}",
                level="error",
                meta={"error_code": ErrorCode.CREDITS.value},
            )

        await self.store.update_project(ctx.project_id, {
            "status": "ready",
            "timeline_path": ctx.artifacts.timeline_path,
        })
        await self.checkpoints.clear(ctx.job_id)
        await self._flush(ctx, JobStatus.READY)

        logger.info(f"[{ctx.job_id}] READY ({final_credits} credit(s))")

        try:
            result = await self.steps.notify(ctx)
        except Exception as e:
            result = StepResult.fail(ErrorCode.NOTIFY_COMPLETE, str(e))
        if not result.success:
            logger.warning(f"[{ctx.job_id}] Completion notice not sent: {result.error.message}")

    async def _fail_job(self, ctx: PipelineContext, error_code: str, message: str) -> None:
        failed_at = ctx.status
        progress = ctx.progress
        reserved = ctx.job.cost_credits_reserved
        threshold = self.settings.refund_threshold_stage
        refund = should_refund(failed_at, progress, threshold)

        # ctx.status only turns FAILED once the row says so
        await self._write_terminal(ctx, {
            "status": JobStatus.FAILED.value,
            "error_code": error_code,
            "error_message": message,
            "finished_at": now_utc().isoformat(),
        })
        ctx.status = JobStatus.FAILED

        try:
            await self._settle_failure(ctx, failed_at, error_code, message, progress, refund)
        except Exception as e:
            logger.error(f"[{ctx.job_id}] Failure bookkeeping incomplete: {e}", exc_info=True)

        logger.info(f"[{ctx.job_id}] FAILED at {failed_at.value} ({progress}%): {error_code}")
        await self._flush(ctx, JobStatus.FAILED)

    async def _settle_failure(
        self,
        ctx: PipelineContext,
        failed_at: JobStatus,
        error_code: str,
        message: str,
        progress: int,
        refund: bool,
    ) -> None:
        reserved = ctx.job.cost_credits_reserved
        await self.store.insert_event(
            ctx.job_id, failed_at.value, f"Job failed: {message}", level="error",
            meta={
                "error_code": error_code,
                "refund_eligible": refund,
                "progress": progress,
                "reserved_credits": reserved,
            },
        )

        if refund:
            try:
                await self.ledger.release_credits(ctx.job_id)
                await self.store.insert_event(
                    ctx.job_id, failed_at.value, f"Released {reserved} reserved credit(s)",
                    meta={"refund_eligible": True, "progress": progress},
                )
            except Exception as e:
                logger.error(f"[{ctx.job_id}] Credit release failed: {e}", exc_info=True)
                await self.store.insert_event(
                    ctx.job_id, failed_at.value, f"Credit release failed: {e}", level="error",
                    meta={"error_code": ErrorCode.CREDITS.value},
                )
        else:
            threshold = self.settings.refund_threshold_stage
            await self.store.insert_event(
                ctx.job_id, failed_at.value,
                f"Credits not refunded: job failed at or after {threshold.value}",
                meta={"refund_eligible": False, "progress": progress},
            )

    async def _fail_safely(
        self,
        ctx: Optional[PipelineContext],
        job: JobRow,
        error_code: str,
        message: str,
    ) -> None:
        """
        Fail from the crash handler.

        Skips only when the terminal status is already persisted. Raises when
        the FAILED write cannot be made, leaving the job to be redelivered.
        """
        if ctx is None:
            ctx = PipelineContext(
                job=job,
                project=ProjectRow(id=job.project_id, user_id=job.user_id),
                store=self.store,
                object_store=self.object_store,
                settings=self.settings,
                http=self.http,
                sleep=self.sleep,
            )
        if ctx.status in (JobStatus.FAILED, JobStatus.READY):
            return
        try:
            await self._fail_job(ctx, error_code, message)
        except Exception as e:
            logger.error(f"[{job.id}] Could not mark job FAILED: {e}", exc_info=True)
            raise

    async def _flush(self, ctx: PipelineContext, final_status: JobStatus) -> None:
        ctx.metrics.mark_complete(final_status.value)
        try:
            await ctx.cost_tracker.save(self.store)
        except Exception as e:
            logger.error(f"[{ctx.job_id}] Failed to save costs: {e}")
        await ctx.metrics.save(self.store)
