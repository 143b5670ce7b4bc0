"""
Preview thumbnail from the first generated image (Pillow), letterboxed to
640x360 JPEG for quick loading in the UI. Best effort: the runner logs a
failure and carries on.
"""

import logging
from io import BytesIO

from PIL import Image

from ..context import PipelineContext
from ..models import ErrorCode, StepResult

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = (640, 360)


def make_thumbnail(image_bytes: bytes, size: tuple[int, int] = THUMBNAIL_SIZE) -> bytes:
    with Image.open(BytesIO(image_bytes)) as source:
        img = source.convert("RGB")
    img.thumbnail(size)

    canvas = Image.new("RGB", size, (0, 0, 0))
    canvas.paste(img, ((size[0] - img.width) // 2, (size[1] - img.height) // 2))

    buffer = BytesIO()
    canvas.save(buffer, format="JPEG", quality=80)
    return buffer.getvalue()


async def generate_preview(ctx: PipelineContext) -> StepResult:
    image_paths = ctx.artifacts.image_paths
    if not image_paths:
        return StepResult.fail(ErrorCode.PREVIEW, "No images available for preview generation")

    try:
        source = await ctx.download(image_paths[0])
        thumbnail = make_thumbnail(source)
        path = await ctx.upload(f"{ctx.output_path}/thumbnail.jpg", thumbnail, "image/jpeg")
        await ctx.store.insert_asset(
            ctx.job_id, ctx.project_id, ctx.user_id, "thumbnail", path,
            meta={"width": THUMBNAIL_SIZE[0], "height": THUMBNAIL_SIZE[1]},
        )
    except Exception as e:
        return StepResult.fail(ErrorCode.PREVIEW, str(e) or "Unknown error generating preview")

    logger.info(f"[{ctx.job_id}] Preview thumbnail uploaded: {path}")
    return StepResult.ok({"thumbnail_path": path})
