"""
Per-job API cost tracking.

Every billable external call made during a job appends one immutable
CostEntry. Entries are written to `job_costs` once, when the job finishes
(success or failure), never incrementally.

Usage:
    tracker = CostTracker(job_id, user_id)
    tracker.track_openai_completion("gpt-4o-mini", 1200, 800)
    summary = tracker.get_summary()
    await tracker.save(store)
"""

import logging
from typing import Optional

from .models import CostEntry, CostService, now_utc

logger = logging.getLogger(__name__)

# ── Pricing (USD) ────────────────────────────────────────────────────────────

# Per 1M tokens
OPENAI_PRICING = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
    "gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "gpt-4": {"input": 30.00, "output": 60.00},
}

# Per 1M characters
OPENAI_TTS_PRICING = {
    "tts-1": 15.00,
    "tts-1-hd": 30.00,
}

# Per audio minute
OPENAI_WHISPER_PRICING = {
    "whisper-1": 0.006,
}

# Per image
GEMINI_IMAGE_PRICING = {
    "imagen-3.0-generate-002": 0.040,
    "imagen-3.0-fast-generate-001": 0.020,
}

# Per GB
STORAGE_PRICING = {
    "upload": 0.005,
    "bandwidth": 0.09,
}

BYTES_PER_GB = 1024 ** 3


class CostTracker:
    """Append-only ledger of what a single job cost us."""

    def __init__(self, job_id: str, user_id: str):
        self.job_id = job_id
        self.user_id = user_id
        self._costs: list[CostEntry] = []
        self._saved = False

    def _append(self, service: CostService, operation: str, cost: float, meta: dict) -> float:
        self._costs.append(CostEntry(
            service=service,
            operation=operation,
            cost_usd=cost,
            meta=meta,
        ))
        return cost

    # ── OpenAI ───────────────────────────────────────────────────────────

    def track_openai_completion(self, model: str, input_tokens: int, output_tokens: int) -> float:
        pricing = OPENAI_PRICING.get(model)
        if not pricing:
            logger.warning(f"[CostTracker] Unknown OpenAI model: {model}")
            return 0.0

        input_cost = input_tokens / 1_000_000 * pricing["input"]
        output_cost = output_tokens / 1_000_000 * pricing["output"]
        return self._append(CostService.OPENAI, "completion", input_cost + output_cost, {
            "model": model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "input_cost": input_cost,
            "output_cost": output_cost,
        })

    def track_openai_tts(self, model: str, characters: int) -> float:
        price_per_million = OPENAI_TTS_PRICING.get(model)
        if not price_per_million:
            logger.warning(f"[CostTracker] Unknown OpenAI TTS model: {model}")
            return 0.0

        cost = characters / 1_000_000 * price_per_million
        return self._append(CostService.OPENAI, "tts", cost, {
            "model": model,
            "characters": characters,
        })

    def track_openai_whisper(self, model: str, duration_seconds: float) -> float:
        price_per_minute = OPENAI_WHISPER_PRICING.get(model)
        if not price_per_minute:
            logger.warning(f"[CostTracker] Unknown OpenAI Whisper model: {model}")
            return 0.0

        minutes = duration_seconds / 60
        return self._append(CostService.OPENAI, "whisper", minutes * price_per_minute, {
            "model": model,
            "duration_seconds": duration_seconds,
            "duration_minutes": minutes,
        })

    # ── Gemini ───────────────────────────────────────────────────────────

    def track_gemini_image(self, model: str, image_count: int = 1) -> float:
        price_per_image = GEMINI_IMAGE_PRICING.get(model)
        if not price_per_image:
            logger.warning(f"[CostTracker] Unknown Gemini model: {model}")
            return 0.0

        return self._append(CostService.GEMINI, "image", image_count * price_per_image, {
            "model": model,
            "image_count": image_count,
            "price_per_image": price_per_image,
        })

    # ── Storage ──────────────────────────────────────────────────────────

    def track_storage_upload(self, size_bytes: int) -> float:
        size_gb = size_bytes / BYTES_PER_GB
        return self._append(CostService.STORAGE, "upload", size_gb * STORAGE_PRICING["upload"], {
            "size_bytes": size_bytes,
            "size_gb": size_gb,
        })

    def track_storage_bandwidth(self, size_bytes: int) -> float:
        size_gb = size_bytes / BYTES_PER_GB
        return self._append(CostService.STORAGE, "bandwidth", size_gb * STORAGE_PRICING["bandwidth"], {
            "size_bytes": size_bytes,
            "size_gb": size_gb,
        })

    # ── Reads ────────────────────────────────────────────────────────────

    def get_total_cost(self) -> float:
        return sum(entry.cost_usd for entry in self._costs)

    def get_costs(self) -> list[CostEntry]:
        return list(self._costs)

    def get_costs_by_service(self) -> dict[str, list[CostEntry]]:
        grouped: dict[str, list[CostEntry]] = {s.value: [] for s in CostService}
        for entry in self._costs:
            grouped[entry.service.value].append(entry)
        return grouped

    def get_summary(self) -> dict:
        return summarize(self.job_id, self.user_id, self._costs)

    # ── Persistence ──────────────────────────────────────────────────────

    async def save(self, store) -> int:
        """
        Write all entries to `job_costs`. Called once per run; a second call
        is a no-op. Returns the number of rows written.
        """
        if self._saved:
            return 0
        if not self._costs:
            logger.info(f"[CostTracker] No costs to save for job {self.job_id}")
            self._saved = True
            return 0

        rows = [
            {
                "job_id": self.job_id,
                "user_id": self.user_id,
                "service": entry.service.value,
                "operation": entry.operation,
                "cost_usd": entry.cost_usd,
                "meta": entry.meta,
            }
            for entry in self._costs
        ]
        await store.insert_costs(rows)
        self._saved = True
        logger.info(f"[CostTracker] Saved {len(rows)} cost entries for job {self.job_id}")
        return len(rows)


def summarize(job_id: str, user_id: Optional[str], costs: list[CostEntry]) -> dict:
    breakdown = {s.value: 0.0 for s in CostService}
    for entry in costs:
        breakdown[entry.service.value] += entry.cost_usd

    return {
        "job_id": job_id,
        "user_id": user_id,
        "total_cost": sum(entry.cost_usd for entry in costs),
        "breakdown": breakdown,
        "costs": list(costs),
        "timestamp": now_utc(),
    }


async def fetch_job_costs(store, job_id: str) -> Optional[dict]:
    """Rebuild a job's cost summary from persisted `job_costs` rows."""
    rows = await store.fetch_job_costs(job_id)
    if not rows:
        return None

    costs = [
        CostEntry(
            service=row["service"],
            operation=row["operation"],
            cost_usd=float(row["cost_usd"]),
            meta=row.get("meta") or {},
            timestamp=row.get("created_at") or now_utc(),
        )
        for row in rows
    ]
    return summarize(job_id, rows[0].get("user_id"), costs)
