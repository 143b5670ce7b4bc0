"""Artifact merging and step result shape."""

import pytest
from pydantic import ValidationError

from shorts_worker.pipeline.models import (
    ErrorCode,
    JobStatus,
    PipelineArtifacts,
    StepResult,
    status_index,
)


class TestPipelineArtifacts:

    def test_merge_adds_and_replaces(self):
        artifacts = PipelineArtifacts()
        artifacts.merge({"narration_path": "a.mp3"})
        artifacts.merge({"narration_path": "b.mp3", "narration_duration_ms": 1000})
        assert artifacts.narration_path == "b.mp3"
        assert artifacts.present() == ["narration_path", "narration_duration_ms"]

    def test_merge_never_clears(self):
        artifacts = PipelineArtifacts(video_path="v.mp4")
        artifacts.merge({"video_path": None})
        assert artifacts.video_path == "v.mp4"

    def test_merge_rejects_unknown_names(self):
        with pytest.raises(ValueError, match="Unknown artifact"):
            PipelineArtifacts().merge({"banana": 1})

    def test_merge_validates_types(self):
        with pytest.raises(ValidationError):
            PipelineArtifacts().merge({"image_paths": "not-a-list"})


class TestStepResult:

    def test_ok(self):
        result = StepResult.ok({"video_path": "v.mp4"})
        assert result.success and result.error is None

    def test_fail_carries_code_value(self):
        result = StepResult.fail(ErrorCode.RENDER, "timed out", {"attempts": 3})
        assert not result.success
        assert result.error.code == "ERR_RENDER"
        assert result.error.details == {"attempts": 3}

    def test_exactly_one_outcome(self):
        with pytest.raises(ValidationError):
            StepResult(success=False)
        with pytest.raises(ValidationError):
            StepResult(success=True, error={"code": "ERR_RENDER", "message": "x"})


class TestStatusOrder:

    def test_forward_order(self):
        assert status_index(JobStatus.QUEUED) < status_index(JobStatus.IMAGE_GEN) < status_index(JobStatus.READY)

    def test_failed_is_outside(self):
        assert status_index(JobStatus.FAILED) == -1
