"""Checkpoint persistence and retry options."""

import pytest

from conftest import JOB_ID, make_ctx
from shorts_worker.pipeline.checkpoint import (
    CheckpointStore,
    can_retry_from_checkpoint,
    get_next_step_from_checkpoint,
    get_retry_options,
    parse_checkpoint,
)
from shorts_worker.pipeline.models import CheckpointState, JobStatus, PipelineArtifacts


def checkpoint(step, **artifacts):
    return CheckpointState(
        last_completed_step=step,
        artifacts=PipelineArtifacts(**artifacts),
        progress=70,
    )


class TestParseCheckpoint:

    def test_missing(self):
        assert parse_checkpoint(None) is None
        assert parse_checkpoint({}) is None

    def test_unreadable_is_absent(self):
        assert parse_checkpoint({"last_completed_step": "NOT_A_STAGE"}) is None

    def test_valid(self):
        state = parse_checkpoint({
            "last_completed_step": "IMAGE_GEN",
            "artifacts": {"narration_path": "a.mp3"},
            "progress": 70,
        })
        assert state.last_completed_step == JobStatus.IMAGE_GEN
        assert state.artifacts.narration_path == "a.mp3"


class TestNextStep:

    def test_no_checkpoint_starts_at_scripting(self):
        assert get_next_step_from_checkpoint(None) == JobStatus.SCRIPTING

    def test_follows_completed_stage(self):
        assert get_next_step_from_checkpoint(checkpoint(JobStatus.IMAGE_GEN)) == JobStatus.TIMELINE_BUILD
        assert get_next_step_from_checkpoint(checkpoint(JobStatus.RENDERING)) == JobStatus.PACKAGING

    def test_nothing_after_ready(self):
        assert get_next_step_from_checkpoint(checkpoint(JobStatus.READY)) is None


class TestRetryOptions:

    def test_before_threshold_needs_full_retry(self):
        state = checkpoint(JobStatus.VOICE_GEN, narration_path="a.mp3")
        assert not can_retry_from_checkpoint(state)
        options = get_retry_options(state)
        assert not options.can_retry_from_checkpoint
        assert options.next_step is None
        assert "full retry" in options.message

    def test_no_checkpoint(self):
        assert not get_retry_options(None).can_retry_from_checkpoint

    def test_after_images_mentions_saved_work(self):
        state = checkpoint(
            JobStatus.IMAGE_GEN,
            narration_path="a.mp3",
            image_paths=["1.png", "2.png", "3.png"],
        )
        options = get_retry_options(state)
        assert options.can_retry_from_checkpoint
        assert options.next_step == JobStatus.TIMELINE_BUILD
        assert "TIMELINE_BUILD" in options.message
        assert "3 images were generated successfully" in options.message
        assert "voice narration was created" in options.message
        assert "won't be charged again" in options.message


class TestCheckpointStore:

    @pytest.mark.asyncio
    async def test_save_load_clear(self, store, object_store, settings):
        ctx = make_ctx(store, object_store, settings)
        ctx.progress = 70
        ctx.artifacts.merge({"narration_path": "a.mp3", "image_paths": ["1.png"]})
        checkpoints = CheckpointStore(store)

        await checkpoints.save(ctx, JobStatus.IMAGE_GEN)
        assert store.jobs[JOB_ID]["checkpoint_state"]["last_completed_step"] == "IMAGE_GEN"
        assert store.events_with("Checkpoint saved")

        loaded = await checkpoints.load(JOB_ID)
        assert loaded.progress == 70
        assert loaded.artifacts.image_paths == ["1.png"]

        await checkpoints.clear(JOB_ID)
        assert await checkpoints.load(JOB_ID) is None

    @pytest.mark.asyncio
    async def test_snapshot_is_independent_of_later_changes(self, store, object_store, settings):
        ctx = make_ctx(store, object_store, settings)
        ctx.artifacts.merge({"image_paths": ["1.png"]})
        state = await CheckpointStore(store).save(ctx, JobStatus.IMAGE_GEN)

        ctx.artifacts.merge({"video_path": "v.mp4"})
        assert state.artifacts.video_path is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, store):
        assert await CheckpointStore(store).load("nope") is None
