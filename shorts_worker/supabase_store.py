"""
Supabase-backed job store.

All pipeline persistence goes through here, using the service role client
(bypasses RLS). Writes are scoped by job/project id and are either inserts
(events, assets, costs, metrics) or single-row updates (job status,
progress, checkpoint). No multi-row transactions are needed: two stages of
the same job never write concurrently.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from supabase import Client, create_client

logger = logging.getLogger(__name__)


def create_service_client(settings) -> Client:
    """Supabase client using the service role key."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseJobStore:
    """Job, event, asset, cost and metrics tables."""

    def __init__(self, client: Client):
        self._sb = client

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[dict]:
        result = self._sb.table("jobs").select("*").eq("id", job_id).maybe_single().execute()
        return result.data if result else None

    async def update_job(self, job_id: str, fields: dict) -> None:
        update = dict(fields)
        update["updated_at"] = _now_iso()
        self._sb.table("jobs").update(update).eq("id", job_id).execute()

    async def update_status(self, job_id: str, status: str, progress: int) -> None:
        await self.update_job(job_id, {"status": status, "progress": progress})
        logger.info(f"[{job_id}] {status} ({progress}%)")

    async def heartbeat(self, job_id: str) -> None:
        self._sb.table("jobs").update({"heartbeat_at": _now_iso()}).eq("id", job_id).execute()

    async def insert_event(
        self,
        job_id: str,
        stage: str,
        message: str,
        level: str = "info",
        meta: Optional[dict] = None,
    ) -> None:
        self._sb.table("job_events").insert({
            "job_id": job_id,
            "stage": stage,
            "message": message,
            "level": level,
            "meta": meta or {},
        }).execute()

    # ── Projects ─────────────────────────────────────────────────────────

    async def get_project(self, project_id: str) -> Optional[dict]:
        result = self._sb.table("projects").select("*").eq("id", project_id).maybe_single().execute()
        return result.data if result else None

    async def update_project(self, project_id: str, fields: dict) -> None:
        update = dict(fields)
        update["updated_at"] = _now_iso()
        self._sb.table("projects").update(update).eq("id", project_id).execute()

    async def list_project_inputs(self, project_id: str) -> list[dict]:
        result = (
            self._sb.table("project_inputs")
            .select("*")
            .eq("project_id", project_id)
            .order("created_at")
            .execute()
        )
        return result.data or []

    # ── Assets ───────────────────────────────────────────────────────────

    async def find_asset(self, job_id: str, asset_type: str) -> Optional[dict]:
        """Latest asset of a type for a job, used for idempotency checks."""
        result = (
            self._sb.table("assets")
            .select("*")
            .eq("job_id", job_id)
            .eq("type", asset_type)
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def list_assets(self, job_id: str, asset_type: str) -> list[dict]:
        result = (
            self._sb.table("assets")
            .select("*")
            .eq("job_id", job_id)
            .eq("type", asset_type)
            .order("created_at")
            .execute()
        )
        return result.data or []

    async def insert_asset(
        self,
        job_id: str,
        project_id: str,
        user_id: str,
        asset_type: str,
        path: str,
        meta: Optional[dict] = None,
    ) -> None:
        self._sb.table("assets").insert({
            "job_id": job_id,
            "project_id": project_id,
            "user_id": user_id,
            "type": asset_type,
            "path": path,
            "meta": meta or {},
        }).execute()

    # ── Observability sinks ──────────────────────────────────────────────

    async def insert_costs(self, rows: list[dict]) -> None:
        self._sb.table("job_costs").insert(rows).execute()

    async def fetch_job_costs(self, job_id: str) -> list[dict]:
        result = self._sb.table("job_costs").select("*").eq("job_id", job_id).execute()
        return result.data or []

    async def insert_metrics(self, row: dict) -> None:
        self._sb.table("pipeline_metrics").insert(row).execute()

    async def fetch_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[dict]:
        query = self._sb.table("pipeline_metrics").select("*")
        if start:
            query = query.gte("created_at", start.isoformat())
        if end:
            query = query.lte("created_at", end.isoformat())
        return query.execute().data or []
