"""
Pipeline context: everything a step can see.

Built once per runner invocation. Clients are passed in rather than pulled
from module globals, so every test gets its own isolated set.
"""

import asyncio
import logging
from typing import Optional

import httpx

from .costs import CostTracker
from .metrics import PipelineMetrics
from .models import JobRow, PipelineArtifacts, ProjectRow

logger = logging.getLogger(__name__)


def create_base_path(user_id: str, project_id: str, job_id: str) -> str:
    return f"project-assets/u_{user_id}/p_{project_id}/j_{job_id}"


def create_output_path(user_id: str, project_id: str, job_id: str) -> str:
    return f"project-outputs/u_{user_id}/p_{project_id}/j_{job_id}"


class PipelineContext:
    """Per-run state shared by all steps."""

    def __init__(
        self,
        job: JobRow,
        project: ProjectRow,
        store,
        object_store,
        settings,
        http: Optional[httpx.AsyncClient] = None,
        metrics: Optional[PipelineMetrics] = None,
        cost_tracker: Optional[CostTracker] = None,
        artifacts: Optional[PipelineArtifacts] = None,
        sleep=asyncio.sleep,
    ):
        self.job = job
        self.project = project
        self.store = store
        self.object_store = object_store
        self.settings = settings
        self.http = http
        self.metrics = metrics or PipelineMetrics(job.id, job.user_id)
        self.cost_tracker = cost_tracker or CostTracker(job.id, job.user_id)
        self.artifacts = artifacts or PipelineArtifacts()
        self.sleep = sleep
        self.progress = job.progress
        self.status = job.status

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def user_id(self) -> str:
        return self.job.user_id

    @property
    def project_id(self) -> str:
        return self.job.project_id

    @property
    def base_path(self) -> str:
        return create_base_path(self.user_id, self.project_id, self.job_id)

    @property
    def output_path(self) -> str:
        return create_output_path(self.user_id, self.project_id, self.job_id)

    async def log_event(self, message: str, level: str = "info", meta: Optional[dict] = None) -> None:
        await self.store.insert_event(self.job_id, self.status.value, message, level=level, meta=meta)

    async def heartbeat(self) -> None:
        await self.store.heartbeat(self.job_id)

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        """Upload to the object store and bill the bytes to this job."""
        path = await self.object_store.upload(key, data, content_type)
        self.cost_tracker.track_storage_upload(len(data))
        return path

    async def download(self, key: str) -> bytes:
        data = await self.object_store.download(key)
        self.cost_tracker.track_storage_bandwidth(len(data))
        return data
