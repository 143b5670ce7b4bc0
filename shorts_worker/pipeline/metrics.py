"""
Per-job pipeline metrics.

Records start/end/duration/status for each stage attempt and rolls the
first failure up into a category, so aggregate queries can tell external
API flakiness apart from our own bugs.

Rows land in `pipeline_metrics` once per run. The aggregation helpers at the
bottom are read-only analytics over those rows and are not on the live
runner path.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional

from .models import FailureCategory, StepMetric, StepStatus, now_utc

logger = logging.getLogger(__name__)

# ── Failure Categories ───────────────────────────────────────────────────────

FAILURE_CATEGORIES = {
    "ERR_TTS": FailureCategory.EXTERNAL_API,
    "ERR_WHISPER": FailureCategory.EXTERNAL_API,
    "ERR_ALIGNMENT": FailureCategory.EXTERNAL_API,
    "ERR_IMAGE_GEN": FailureCategory.EXTERNAL_API,
    "ERR_SCRIPT_GEN": FailureCategory.GENERATION,
    "ERR_VISUAL_PLAN": FailureCategory.GENERATION,
    "ERR_MODERATION": FailureCategory.GENERATION,
    "ERR_TIMELINE": FailureCategory.RENDERING,
    "ERR_PREVIEW": FailureCategory.RENDERING,
    "ERR_RENDER": FailureCategory.RENDERING,
    "ERR_PACKAGING": FailureCategory.RENDERING,
    "ERR_INPUT_FETCH": FailureCategory.SYSTEM,
    "ERR_CREDITS": FailureCategory.SYSTEM,
    "ERR_NOTIFY_COMPLETE": FailureCategory.SYSTEM,
    "ERR_UNKNOWN": FailureCategory.SYSTEM,
}


def categorize_failure(error_code: Optional[str]) -> FailureCategory:
    if not error_code:
        return FailureCategory.UNKNOWN
    return FAILURE_CATEGORIES.get(error_code, FailureCategory.UNKNOWN)


def _ms_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class PipelineMetrics:
    """Step timings for one run of one job."""

    def __init__(
        self,
        job_id: str,
        user_id: str,
        retry_attempt: int = 0,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.job_id = job_id
        self.user_id = user_id
        self.retry_attempt = retry_attempt
        self.final_status: Optional[str] = None
        self._clock = clock
        self._started_at = clock()
        self._ended_at: Optional[datetime] = None
        self._steps: list[StepMetric] = []
        self._open: dict[str, StepMetric] = {}

    def start_step(self, step: str) -> None:
        metric = StepMetric(step=step, status=StepStatus.SUCCESS, started_at=self._clock())
        self._steps.append(metric)
        self._open[step] = metric

    def end_step(
        self,
        step: str,
        status: StepStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        metric = self._open.pop(step, None)
        if metric is None:
            logger.warning(f"[Metrics] Step {step} was never started (job {self.job_id})")
            return

        metric.ended_at = self._clock()
        metric.duration_ms = _ms_between(metric.started_at, metric.ended_at)
        metric.status = StepStatus(status)
        if metric.status == StepStatus.FAILED:
            metric.error_code = error_code
            metric.error_message = error_message

    def skip_step(self, step: str) -> None:
        """Record a stage that was not run because a checkpoint covers it."""
        at = self._clock()
        self._steps.append(StepMetric(
            step=step,
            status=StepStatus.SKIPPED,
            started_at=at,
            ended_at=at,
            duration_ms=0,
        ))

    def mark_complete(self, final_status: Optional[str] = None) -> None:
        self._ended_at = self._clock()
        if final_status is not None:
            self.final_status = final_status

    @property
    def steps(self) -> list[StepMetric]:
        return list(self._steps)

    def get_data(self) -> dict:
        if self._ended_at is not None:
            total_duration = _ms_between(self._started_at, self._ended_at)
        else:
            total_duration = sum(s.duration_ms or 0 for s in self._steps)

        failed = next((s for s in self._steps if s.status == StepStatus.FAILED), None)
        failure_category = categorize_failure(failed.error_code).value if failed else None

        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "started_at": self._started_at,
            "ended_at": self._ended_at,
            "total_duration_ms": total_duration,
            "steps": self.steps,
            "retry_attempt": self.retry_attempt or None,
            "failure_category": failure_category,
            "final_status": self.final_status,
        }

    async def save(self, store) -> bool:
        """Persist to `pipeline_metrics`. Never raises; a metrics outage must not fail the job."""
        data = self.get_data()
        row = {
            "job_id": data["job_id"],
            "user_id": data["user_id"],
            "started_at": data["started_at"].isoformat(),
            "ended_at": data["ended_at"].isoformat() if data["ended_at"] else None,
            "total_duration_ms": data["total_duration_ms"],
            "steps": [s.model_dump(mode="json") for s in data["steps"]],
            "retry_attempt": data["retry_attempt"],
            "failure_category": data["failure_category"],
            "final_status": data["final_status"],
        }
        try:
            await store.insert_metrics(row)
        except Exception as e:
            logger.error(f"[Metrics] Failed to save metrics for job {self.job_id}: {e}")
            return False
        logger.info(f"[Metrics] Saved metrics for job {self.job_id}")
        return True


# ═════════════════════════════════════════════════════════════════════════════
# Aggregation over persisted rows
# ═════════════════════════════════════════════════════════════════════════════

def _percentile(sorted_values: list[int], fraction: float) -> int:
    if not sorted_values:
        return 0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def compute_step_stats(rows: list[dict]) -> list[dict]:
    """Success rate and avg/median/p95 duration per step. Skipped runs are ignored."""
    stats: dict[str, dict] = defaultdict(lambda: {"durations": [], "successes": 0, "failures": 0})

    for row in rows:
        for step in row.get("steps") or []:
            status = step.get("status")
            if status == StepStatus.SKIPPED.value:
                continue
            entry = stats[step["step"]]
            if step.get("duration_ms") is not None:
                entry["durations"].append(step["duration_ms"])
            if status == StepStatus.SUCCESS.value:
                entry["successes"] += 1
            elif status == StepStatus.FAILED.value:
                entry["failures"] += 1

    results = []
    for step, entry in stats.items():
        total = entry["successes"] + entry["failures"]
        durations = sorted(entry["durations"])
        n = len(durations)
        results.append({
            "step": step,
            "total_runs": total,
            "success_count": entry["successes"],
            "failed_count": entry["failures"],
            "success_rate": round(entry["successes"] / total * 100, 2) if total else 0.0,
            "avg_duration_ms": round(sum(durations) / n) if n else 0,
            "median_duration_ms": _percentile(durations, 0.5),
            "p95_duration_ms": _percentile(durations, 0.95),
        })
    return results


def compute_failure_reasons(rows: list[dict]) -> list[dict]:
    """Failed-step error codes ranked by count."""
    counts: dict[str, int] = defaultdict(int)
    total = 0

    for row in rows:
        for step in row.get("steps") or []:
            code = step.get("error_code")
            if step.get("status") == StepStatus.FAILED.value and code:
                counts[code] += 1
                total += 1

    results = [
        {
            "error_code": code,
            "count": count,
            "percentage": round(count / total * 100, 2) if total else 0.0,
            "failure_category": categorize_failure(code).value,
        }
        for code, count in counts.items()
    ]
    results.sort(key=lambda r: r["count"], reverse=True)
    return results


def _row_failed(row: dict) -> bool:
    if row.get("final_status"):
        return row["final_status"] == "FAILED"
    return any(s.get("status") == StepStatus.FAILED.value for s in row.get("steps") or [])


def compute_pipeline_health(rows: list[dict]) -> dict:
    total = len(rows)
    failed = sum(1 for row in rows if _row_failed(row))
    durations = sorted(row["total_duration_ms"] for row in rows if row.get("total_duration_ms"))

    return {
        "total_jobs": total,
        "successful_jobs": total - failed,
        "failed_jobs": failed,
        "success_rate": round((total - failed) / total * 100, 2) if total else 0.0,
        "avg_total_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
        "median_total_duration_ms": _percentile(durations, 0.5),
    }


async def get_step_stats(store, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list[dict]:
    return compute_step_stats(await store.fetch_metrics(start, end))


async def get_failure_reasons(store, start: Optional[datetime] = None, end: Optional[datetime] = None) -> list[dict]:
    return compute_failure_reasons(await store.fetch_metrics(start, end))


async def get_pipeline_health(store, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
    return compute_pipeline_health(await store.fetch_metrics(start, end))
