"""
Pydantic models and enums for the video generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ── Job Status ───────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    SCRIPTING = "SCRIPTING"
    VOICE_GEN = "VOICE_GEN"
    ALIGNMENT = "ALIGNMENT"
    VISUAL_PLAN = "VISUAL_PLAN"
    IMAGE_GEN = "IMAGE_GEN"
    TIMELINE_BUILD = "TIMELINE_BUILD"
    RENDERING = "RENDERING"
    PACKAGING = "PACKAGING"
    READY = "READY"
    FAILED = "FAILED"


# Forward order of a job's life. FAILED is terminal and sits outside it.
STATUS_ORDER = [
    JobStatus.QUEUED,
    JobStatus.SCRIPTING,
    JobStatus.VOICE_GEN,
    JobStatus.ALIGNMENT,
    JobStatus.VISUAL_PLAN,
    JobStatus.IMAGE_GEN,
    JobStatus.TIMELINE_BUILD,
    JobStatus.RENDERING,
    JobStatus.PACKAGING,
    JobStatus.READY,
]

# Progress logged when a status is entered
STATUS_PROGRESS_FLOOR = {
    JobStatus.QUEUED: 0,
    JobStatus.SCRIPTING: 5,
    JobStatus.VOICE_GEN: 25,
    JobStatus.ALIGNMENT: 40,
    JobStatus.VISUAL_PLAN: 50,
    JobStatus.IMAGE_GEN: 55,
    JobStatus.TIMELINE_BUILD: 75,
    JobStatus.RENDERING: 80,
    JobStatus.PACKAGING: 95,
    JobStatus.READY: 100,
}


def status_index(status: JobStatus) -> int:
    """Position of a status in the forward order, -1 for FAILED."""
    try:
        return STATUS_ORDER.index(JobStatus(status))
    except ValueError:
        return -1


# ── Error Codes ──────────────────────────────────────────────────────────────

class ErrorCode(str, Enum):
    INPUT_FETCH = "ERR_INPUT_FETCH"
    SCRIPT_GEN = "ERR_SCRIPT_GEN"
    TTS = "ERR_TTS"
    WHISPER = "ERR_WHISPER"
    ALIGNMENT = "ERR_ALIGNMENT"
    VISUAL_PLAN = "ERR_VISUAL_PLAN"
    IMAGE_GEN = "ERR_IMAGE_GEN"
    TIMELINE = "ERR_TIMELINE"
    PREVIEW = "ERR_PREVIEW"
    RENDER = "ERR_RENDER"
    PACKAGING = "ERR_PACKAGING"
    NOTIFY_COMPLETE = "ERR_NOTIFY_COMPLETE"
    CREDITS = "ERR_CREDITS"
    MODERATION = "ERR_MODERATION"
    UNKNOWN = "ERR_UNKNOWN"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureCategory(str, Enum):
    EXTERNAL_API = "external_api"
    GENERATION = "generation"
    RENDERING = "rendering"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class CostService(str, Enum):
    OPENAI = "openai"
    GEMINI = "gemini"
    STORAGE = "storage"


# ── Database Rows ────────────────────────────────────────────────────────────

class JobRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    project_id: str
    user_id: str
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cost_credits_reserved: int = 0
    cost_credits_final: int = 0
    checkpoint_state: Optional[dict] = None
    retry_count: int = 0
    claimed_by: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class ProjectRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str = "Untitled"
    niche_preset: str = "explainer"
    target_minutes: int = 1
    status: str = "draft"
    template_id: str = "default"
    visual_preset_id: str = "cinematic"
    voice_profile_id: Optional[str] = None
    image_density: str = "medium"  # low, medium, high
    target_resolution: str = "1080p"


# ── Script ───────────────────────────────────────────────────────────────────

class ScriptSection(BaseModel):
    id: str
    order: int
    headline: str = ""
    narration_text: str
    visual_keywords: list[str] = Field(default_factory=list)
    on_screen_text: Optional[str] = None
    estimated_duration_ms: int = 0


class Script(BaseModel):
    title: str
    sections: list[ScriptSection]
    total_word_count: int = 0
    estimated_duration_ms: int = 0


# ── Alignment ────────────────────────────────────────────────────────────────

class WhisperSegment(BaseModel):
    id: int
    start: float  # seconds
    end: float    # seconds
    text: str


# ── Visual Plan ──────────────────────────────────────────────────────────────

class VisualSlot(BaseModel):
    id: str
    start_ms: int
    end_ms: int
    text: str
    prompt: str
    style_preset: str
    seed: Optional[int] = None


class VisualPlan(BaseModel):
    slots: list[VisualSlot]
    total_images: int
    cadence_ms: int


# ── Artifacts ────────────────────────────────────────────────────────────────

class PipelineArtifacts(BaseModel):
    """
    Outputs accumulated during a run, one optional field per stage output.

    Fields are only ever added or replaced by a later attempt of the same
    stage; `merge()` never clears one. This is the part of the context that
    gets checkpointed.
    """
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    merged_input_text: Optional[str] = None
    script: Optional[Script] = None
    section_audio_paths: Optional[list[str]] = None
    narration_path: Optional[str] = None
    narration_duration_ms: Optional[int] = None
    whisper_segments: Optional[list[WhisperSegment]] = None
    captions_srt_path: Optional[str] = None
    visual_plan: Optional[VisualPlan] = None
    image_paths: Optional[list[str]] = None
    timeline: Optional[dict[str, Any]] = None
    timeline_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    video_path: Optional[str] = None
    zip_path: Optional[str] = None

    def merge(self, data: Optional[dict[str, Any]]) -> None:
        """Merge a step's output. Unknown names raise ValueError."""
        if not data:
            return
        unknown = set(data) - set(type(self).model_fields)
        if unknown:
            raise ValueError(f"Unknown artifact(s): {sorted(unknown)}")
        for name, value in data.items():
            if value is not None:
                setattr(self, name, value)

    def present(self) -> list[str]:
        return [name for name, value in self if value is not None]


# ── Step Result ──────────────────────────────────────────────────────────────

class StepError(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class StepResult(BaseModel):
    """Either `success` with `data`, or a failure with `error`. Never both."""

    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[StepError] = None

    @model_validator(mode="after")
    def _one_outcome(self):
        if self.success and self.error is not None:
            raise ValueError("A successful StepResult cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("A failed StepResult must carry an error")
        return self

    @classmethod
    def ok(cls, data: Optional[dict[str, Any]] = None) -> "StepResult":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, code, message: str, details: Any = None) -> "StepResult":
        code = code.value if isinstance(code, ErrorCode) else code
        return cls(success=False, error=StepError(code=code, message=message, details=details))


# ── Observability ────────────────────────────────────────────────────────────

class StepMetric(BaseModel):
    step: str
    status: StepStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class CostEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: CostService
    operation: str
    cost_usd: float
    meta: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=now_utc)


# ── Checkpoint ───────────────────────────────────────────────────────────────

class CheckpointState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    last_completed_step: JobStatus
    artifacts: PipelineArtifacts = Field(default_factory=PipelineArtifacts)
    progress: int = 0
    saved_at: datetime = Field(default_factory=now_utc)


class RetryOptions(BaseModel):
    can_retry_from_checkpoint: bool
    next_step: Optional[JobStatus] = None
    message: str
