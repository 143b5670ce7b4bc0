"""
Worker configuration.

Values come from the environment (a local `.env` is loaded first). Build a
`WorkerSettings` once at startup and pass it down; nothing below reads
os.environ on its own.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from .pipeline.models import JobStatus


class WorkerSettings(BaseModel):
    # ── Persistence ──────────────────────────────────────────────────────
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    redis_url: Optional[str] = None

    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_bucket_name: str = "project-assets"

    # ── External APIs ────────────────────────────────────────────────────
    openai_api_key: str = ""
    openai_script_model: str = "gpt-4o-mini"
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "onyx"
    openai_whisper_model: str = "whisper-1"
    gemini_api_key: str = ""
    gemini_image_model: str = "imagen-3.0-generate-002"
    render_service_url: str = ""
    app_url: str = "http://localhost:3000"
    worker_shared_secret: str = ""

    # ── Pipeline policy ──────────────────────────────────────────────────
    refund_threshold_stage: JobStatus = JobStatus.IMAGE_GEN
    stage_timeout_seconds: float = 1800  # 0 disables
    heartbeat_interval_seconds: float = 30
    image_batch_size: int = 3
    image_max_retries: int = 2
    image_batch_delay_seconds: float = 1.0
    render_poll_interval_seconds: float = 5
    render_max_poll_attempts: int = 360
    moderation_bypass: bool = False
    worker_id: str = "worker-local"

    @field_validator("refund_threshold_stage")
    @classmethod
    def _threshold_is_a_stage(cls, value: JobStatus) -> JobStatus:
        if value in (JobStatus.QUEUED, JobStatus.FAILED):
            raise ValueError(f"{value.value} cannot be a refund threshold")
        return value

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        load_dotenv()
        env = os.environ
        return cls(
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            redis_url=env.get("REDIS_URL") or None,
            r2_account_id=env.get("R2_ACCOUNT_ID", ""),
            r2_access_key_id=env.get("R2_ACCESS_KEY_ID", ""),
            r2_secret_access_key=env.get("R2_SECRET_ACCESS_KEY", ""),
            r2_bucket_name=env.get("R2_BUCKET_NAME", "project-assets"),
            openai_api_key=env.get("OPENAI_API_KEY", ""),
            openai_script_model=env.get("OPENAI_SCRIPT_MODEL", "gpt-4o-mini"),
            openai_tts_model=env.get("OPENAI_TTS_MODEL", "tts-1"),
            openai_tts_voice=env.get("OPENAI_TTS_VOICE", "onyx"),
            openai_whisper_model=env.get("OPENAI_WHISPER_MODEL", "whisper-1"),
            gemini_api_key=env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY", ""),
            gemini_image_model=env.get("GEMINI_IMAGE_MODEL", "imagen-3.0-generate-002"),
            render_service_url=env.get("RENDER_SERVICE_URL", ""),
            app_url=env.get("APP_URL", "http://localhost:3000"),
            worker_shared_secret=env.get("WORKER_SHARED_SECRET", ""),
            refund_threshold_stage=env.get("REFUND_THRESHOLD_STAGE", "IMAGE_GEN"),
            stage_timeout_seconds=float(env.get("STAGE_TIMEOUT_SECONDS", "1800")),
            heartbeat_interval_seconds=float(env.get("HEARTBEAT_INTERVAL_SECONDS", "30")),
            image_batch_size=int(env.get("IMAGE_BATCH_SIZE", "3")),
            image_max_retries=int(env.get("IMAGE_MAX_RETRIES", "2")),
            image_batch_delay_seconds=float(env.get("IMAGE_BATCH_DELAY_SECONDS", "1.0")),
            render_poll_interval_seconds=float(env.get("RENDER_POLL_INTERVAL_SECONDS", "5")),
            render_max_poll_attempts=int(env.get("RENDER_MAX_POLL_ATTEMPTS", "360")),
            moderation_bypass=env.get("MODERATION_BYPASS", "false").lower() == "true",
            worker_id=env.get("WORKER_ID", "worker-local"),
        )
