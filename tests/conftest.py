"""
In-memory stand-ins for the job store, object store and credit ledger,
plus canned pipeline steps. No network, no database.
"""

import pytest

from shorts_worker.pipeline.models import (
    JobRow,
    Script,
    ScriptSection,
    StepResult,
    VisualPlan,
    VisualSlot,
    WhisperSegment,
)
from shorts_worker.pipeline.steps import StepSet
from shorts_worker.settings import WorkerSettings

JOB_ID = "job-1"
USER_ID = "user-1"
PROJECT_ID = "proj-1"


class FakeJobStore:
    def __init__(self):
        self.jobs: dict[str, dict] = {}
        self.projects: dict[str, dict] = {}
        self.inputs: dict[str, list[dict]] = {}
        self.events: list[dict] = []
        self.assets: list[dict] = []
        self.metrics: list[dict] = []
        self.costs: list[dict] = []
        self.status_history: list[tuple[str, int]] = []
        self.heartbeats = 0
        # status value -> number of writes of that status to reject
        self.reject_status_writes: dict[str, int] = {}

    async def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    async def update_job(self, job_id, fields):
        status = fields.get("status")
        if self.reject_status_writes.get(status, 0) > 0:
            self.reject_status_writes[status] -= 1
            raise RuntimeError(f"write of {status} rejected")
        self.jobs.setdefault(job_id, {"id": job_id}).update(fields)

    async def update_status(self, job_id, status, progress):
        self.status_history.append((status, progress))
        await self.update_job(job_id, {"status": status, "progress": progress})

    async def heartbeat(self, job_id):
        self.heartbeats += 1

    async def insert_event(self, job_id, stage, message, level="info", meta=None):
        self.events.append({
            "job_id": job_id, "stage": stage, "message": message, "level": level, "meta": meta or {},
        })

    async def get_project(self, project_id):
        return self.projects.get(project_id)

    async def update_project(self, project_id, fields):
        self.projects.setdefault(project_id, {"id": project_id}).update(fields)

    async def list_project_inputs(self, project_id):
        return list(self.inputs.get(project_id, []))

    async def find_asset(self, job_id, asset_type):
        matches = [a for a in self.assets if a["job_id"] == job_id and a["type"] == asset_type]
        return matches[-1] if matches else None

    async def list_assets(self, job_id, asset_type):
        return [a for a in self.assets if a["job_id"] == job_id and a["type"] == asset_type]

    async def insert_asset(self, job_id, project_id, user_id, asset_type, path, meta=None):
        self.assets.append({
            "job_id": job_id, "project_id": project_id, "user_id": user_id,
            "type": asset_type, "path": path, "meta": meta or {},
        })

    async def insert_costs(self, rows):
        self.costs.extend(rows)

    async def fetch_job_costs(self, job_id):
        return [row for row in self.costs if row["job_id"] == job_id]

    async def insert_metrics(self, row):
        self.metrics.append(row)

    async def fetch_metrics(self, start=None, end=None):
        return list(self.metrics)

    # ── helpers for assertions ──

    def events_with(self, text):
        return [e for e in self.events if text in e["message"]]


class FakeObjectStore:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    async def upload(self, key, data, content_type="application/octet-stream"):
        self.objects[key] = data
        return key

    async def download(self, key):
        if key not in self.objects:
            raise RuntimeError(f"Download failed for {key}: not found")
        return self.objects[key]


class FakeLedger:
    def __init__(self, fail=False):
        self.released: list[str] = []
        self.finalized: list[tuple[str, str, int]] = []
        self.fail = fail

    async def release_credits(self, job_id):
        if self.fail:
            raise RuntimeError("ledger down")
        self.released.append(job_id)

    async def finalize_credits(self, user_id, job_id, final_cost):
        if self.fail:
            raise RuntimeError("ledger down")
        self.finalized.append((user_id, job_id, final_cost))


# ── Canned step outputs ──────────────────────────────────────────────────────

def sample_script():
    return Script(
        title="Why the sky is blue",
        sections=[
            ScriptSection(id="section_000", order=0, narration_text="Light scatters.", visual_keywords=["sky"]),
            ScriptSection(id="section_001", order=1, narration_text="Blue scatters most."),
        ],
        total_word_count=5,
        estimated_duration_ms=2000,
    )


def sample_segments():
    return [
        WhisperSegment(id=0, start=0.0, end=4.0, text="Light scatters."),
        WhisperSegment(id=1, start=4.0, end=9.5, text="Blue scatters most."),
        WhisperSegment(id=2, start=9.5, end=16.0, text="That is why the sky is blue."),
    ]


def sample_plan():
    return VisualPlan(
        slots=[
            VisualSlot(id="slot_000", start_ms=0, end_ms=9500, text="a", prompt="sky", style_preset="cinematic"),
            VisualSlot(id="slot_001", start_ms=9500, end_ms=16000, text="b", prompt="blue", style_preset="cinematic"),
        ],
        total_images=2,
        cadence_ms=7000,
    )


CANNED_DATA = {
    "ingest": lambda: {"merged_input_text": "# Project: sky\nWhy is it blue?"},
    "script": lambda: {"script": sample_script()},
    "moderation": lambda: {},
    "voice": lambda: {"narration_path": "assets/audio/narration.mp3", "narration_duration_ms": 60_000},
    "alignment": lambda: {"whisper_segments": sample_segments(), "captions_srt_path": "assets/captions.srt"},
    "visual_plan": lambda: {"visual_plan": sample_plan()},
    "images": lambda: {"image_paths": ["assets/images/slot_000.png", "assets/images/slot_001.png"]},
    "timeline": lambda: {"timeline": {"scenes": [1, 2]}, "timeline_path": "assets/timeline.json"},
    "preview": lambda: {"thumbnail_path": "outputs/thumbnail.jpg"},
    "render": lambda: {"video_path": "outputs/video.mp4"},
    "package": lambda: {"zip_path": "outputs/assets.zip"},
    "notify": lambda: {},
}


class StepRecorder:
    """Builds a StepSet of canned steps and records which ones ran."""

    def __init__(self):
        self.calls: list[str] = []
        self.overrides: dict = {}

    def fail(self, name, code, message="boom"):
        self.overrides[name] = StepResult.fail(code, message)

    def raise_in(self, name, exc):
        self.overrides[name] = exc

    def replace(self, name, func):
        self.overrides[name] = func

    def _make(self, name):
        async def step(ctx):
            self.calls.append(name)
            override = self.overrides.get(name)
            if isinstance(override, BaseException):
                raise override
            if isinstance(override, StepResult):
                return override
            if callable(override):
                return await override(ctx)
            return StepResult.ok(CANNED_DATA[name]())
        return step

    def step_set(self) -> StepSet:
        return StepSet(**{name: self._make(name) for name in CANNED_DATA})


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    s = FakeJobStore()
    s.projects[PROJECT_ID] = {
        "id": PROJECT_ID,
        "user_id": USER_ID,
        "title": "Why the sky is blue",
        "niche_preset": "science",
        "target_minutes": 1,
        "image_density": "medium",
        "visual_preset_id": "cinematic",
    }
    s.jobs[JOB_ID] = {
        "id": JOB_ID,
        "project_id": PROJECT_ID,
        "user_id": USER_ID,
        "status": "QUEUED",
        "progress": 0,
        "cost_credits_reserved": 3,
    }
    return s


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def settings():
    return WorkerSettings(
        openai_api_key="sk-test",
        gemini_api_key="gm-test",
        render_service_url="https://render.test",
        app_url="https://app.test",
        worker_shared_secret="secret",
        stage_timeout_seconds=5,
        heartbeat_interval_seconds=0,
        image_batch_delay_seconds=0,
        render_poll_interval_seconds=0,
        render_max_poll_attempts=3,
        moderation_bypass=True,
    )


@pytest.fixture
def recorder():
    return StepRecorder()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


def job_from(store, job_id=JOB_ID) -> JobRow:
    return JobRow.model_validate(store.jobs[job_id])


def make_ctx(store, object_store, settings, http=None, sleep=None, **job_fields):
    """A PipelineContext over the fixture job and project."""
    from shorts_worker.pipeline.context import PipelineContext
    from shorts_worker.pipeline.models import ProjectRow

    store.jobs[JOB_ID].update(job_fields)
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return PipelineContext(
        job=job_from(store),
        project=ProjectRow.model_validate(store.projects[PROJECT_ID]),
        store=store,
        object_store=object_store,
        settings=settings,
        http=http,
        **kwargs,
    )


class FakeRedis:
    """Just enough of the redis-py list/hash API for the job queue."""

    def __init__(self):
        self.lists: dict[str, list[bytes]] = {}
        self.hashes: dict[str, dict[bytes, bytes]] = {}

    @staticmethod
    def _b(value) -> bytes:
        return value if isinstance(value, bytes) else str(value).encode()

    def pipeline(self, transaction=True):
        return _FakePipeline(self)

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, self._b(value))
        return len(items)

    def llen(self, key):
        return len(self.lists.get(key, []))

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])

    def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        value = self._b(value)
        if value in items:
            items.remove(value)
            return 1
        return 0

    def blmove(self, source, destination, timeout, src_side, dest_side):
        items = self.lists.get(source, [])
        if not items:
            return None
        value = items.pop() if src_side == "RIGHT" else items.pop(0)
        target = self.lists.setdefault(destination, [])
        target.insert(0 if dest_side == "LEFT" else len(target), value)
        return value

    def hset(self, key, field=None, value=None, mapping=None):
        data = self.hashes.setdefault(key, {})
        if field is not None:
            data[self._b(field)] = self._b(value)
        for k, v in (mapping or {}).items():
            data[self._b(k)] = self._b(v)

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(self._b(field))

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def expire(self, key, seconds):
        return True


class _FakePipeline:
    def __init__(self, redis_client):
        self._redis = redis_client
        self._calls = []

    def __getattr__(self, name):
        def queue_call(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self
        return queue_call

    def execute(self):
        return [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in self._calls]
