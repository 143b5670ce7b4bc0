"""
Ingest: merge the project's inputs (text, uploaded files, URLs) into one
document the script writer can work from.
"""

import logging
import re
from typing import Optional

from ..context import PipelineContext
from ..models import ErrorCode, StepResult

logger = logging.getLogger(__name__)

TEXT_FILE_EXTENSIONS = (".txt", ".md")
MAX_URL_CHARS = 1_500_000

_SCRIPT_OR_STYLE = re.compile(r"<(script|style)[\s\S]*?>[\s\S]*?</\1>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def strip_html(html: str) -> str:
    text = _SCRIPT_OR_STYLE.sub(" ", html)
    text = _TAG.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def project_header(project) -> list[str]:
    return [
        f"# Project: {project.title}",
        f"Niche: {project.niche_preset}",
        f"Target Duration: {project.target_minutes} minutes",
        "",
    ]


async def _fetch_url_text(ctx: PipelineContext, url: str) -> str:
    response = await ctx.http.get(url, follow_redirects=True, timeout=30)
    response.raise_for_status()
    text = response.text[:MAX_URL_CHARS]
    if "text/html" in response.headers.get("content-type", ""):
        return strip_html(text)
    return text


async def _input_text(ctx: PipelineContext, item: dict) -> Optional[tuple[str, str]]:
    """(heading, body) for one project input, or None to skip it."""
    kind = item.get("type")
    title = item.get("title")

    if kind == "text" and item.get("content_text"):
        return title or "User Text", item["content_text"]

    if kind == "file" and item.get("storage_path"):
        path = item["storage_path"]
        if not path.lower().endswith(TEXT_FILE_EXTENSIONS):
            logger.warning(f"[{ctx.job_id}] Skipping unsupported input file {path}")
            return None
        try:
            data = await ctx.download(path)
        except RuntimeError as e:
            logger.warning(f"[{ctx.job_id}] Failed to download input file {path}: {e}")
            return None
        return title or "Uploaded File", data.decode("utf-8", errors="replace")

    if kind == "url" and item.get("content_text"):
        url = item["content_text"]
        try:
            body = await _fetch_url_text(ctx, url)
        except Exception as e:
            logger.warning(f"[{ctx.job_id}] Failed to fetch {url}: {e}")
            return title or "URL Content", f"URL: {url}"
        return title or "URL Content", f"Source: {url}\n\n{body}"

    return None


async def ingest_inputs(ctx: PipelineContext) -> StepResult:
    try:
        inputs = await ctx.store.list_project_inputs(ctx.project_id)
    except Exception as e:
        return StepResult.fail(ErrorCode.INPUT_FETCH, f"Failed to fetch inputs: {e}")

    try:
        parts = project_header(ctx.project)
        header_len = len(parts)

        for item in inputs:
            section = await _input_text(ctx, item)
            if section is None:
                continue
            heading, body = section
            parts.extend([f"## Input: {heading}", body, ""])

        # Nothing usable: seed from the title
        if len(parts) == header_len:
            parts.extend(["## Topic", f"Create a video about: {ctx.project.title}"])

        merged = "\n".join(parts)
        await ctx.upload(f"{ctx.base_path}/inputs/merged_input.txt", merged.encode("utf-8"), "text/plain")
        await ctx.log_event(f"Merged {len(inputs)} input(s)")
        return StepResult.ok({"merged_input_text": merged})

    except Exception as e:
        return StepResult.fail(ErrorCode.INPUT_FETCH, str(e) or "Unknown error ingesting inputs")
