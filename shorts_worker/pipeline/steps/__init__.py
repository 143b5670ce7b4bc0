"""
Pipeline steps.

Each step is `async (ctx) -> StepResult`. The runner receives them as a
`StepSet` so tests can swap any of them for a fake.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable

from ..models import StepResult
from .alignment import run_alignment
from .images import generate_images
from .ingest import ingest_inputs
from .moderation import moderate_output
from .notify import notify_complete
from .package import package_assets
from .preview import generate_preview
from .render import render_video
from .script import generate_script
from .timeline import build_timeline_step
from .visual_plan import plan_visuals
from .voice import generate_voice

Step = Callable[..., Awaitable[StepResult]]


@dataclass
class StepSet:
    ingest: Step = ingest_inputs
    script: Step = generate_script
    moderation: Step = moderate_output
    voice: Step = generate_voice
    alignment: Step = run_alignment
    visual_plan: Step = plan_visuals
    images: Step = generate_images
    timeline: Step = build_timeline_step
    preview: Step = generate_preview
    render: Step = render_video
    package: Step = package_assets
    notify: Step = notify_complete


def default_steps() -> StepSet:
    return StepSet()


__all__ = ["Step", "StepSet", "default_steps"]
