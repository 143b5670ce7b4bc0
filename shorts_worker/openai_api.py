"""
OpenAI REST calls used by the pipeline: chat completions (script), speech
(TTS), transcriptions (Whisper) and moderations.

Plain httpx against the public API. The caller owns the AsyncClient.
"""

import json
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
MODERATION_MODEL = "omni-moderation-latest"


def _headers(api_key: str) -> dict:
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not configured")
    return {"Authorization": f"Bearer {api_key}"}


async def chat_json(
    client: httpx.AsyncClient,
    api_key: str,
    model: str,
    system_prompt: str,
    user_prompt: str,
    temperature: float = 0.7,
) -> tuple[dict, dict]:
    """
    Chat completion in JSON mode.

    Returns:
        (parsed JSON content, usage dict with prompt_tokens/completion_tokens)
    """
    response = await client.post(
        f"{OPENAI_API_BASE}/chat/completions",
        headers=_headers(api_key),
        json={
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": temperature,
        },
        timeout=120,
    )
    response.raise_for_status()
    result = response.json()

    choices = result.get("choices", [])
    content = choices[0].get("message", {}).get("content") if choices else None
    if not content:
        raise RuntimeError("OpenAI returned no content")

    return json.loads(content), result.get("usage", {})


async def synthesize_speech(
    client: httpx.AsyncClient,
    api_key: str,
    model: str,
    voice: str,
    text: str,
) -> bytes:
    """Text to MP3 bytes."""
    response = await client.post(
        f"{OPENAI_API_BASE}/audio/speech",
        headers=_headers(api_key),
        json={
            "model": model,
            "voice": voice,
            "input": text,
            "response_format": "mp3",
        },
        timeout=120,
    )
    response.raise_for_status()
    return response.content


async def transcribe(
    client: httpx.AsyncClient,
    api_key: str,
    model: str,
    audio: bytes,
    filename: str = "narration.mp3",
) -> dict:
    """Whisper transcription with segment timestamps (verbose_json)."""
    response = await client.post(
        f"{OPENAI_API_BASE}/audio/transcriptions",
        headers=_headers(api_key),
        data={
            "model": model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": "segment",
        },
        files={"file": (filename, audio, "audio/mpeg")},
        timeout=300,
    )
    response.raise_for_status()
    return response.json()


async def moderate(
    client: httpx.AsyncClient,
    api_key: str,
    text: str,
    model: str = MODERATION_MODEL,
) -> Optional[list[str]]:
    """
    Run one text through the moderation endpoint.

    Returns:
        The flagged category names, or None when the text is clean.
    """
    response = await client.post(
        f"{OPENAI_API_BASE}/moderations",
        headers=_headers(api_key),
        json={"model": model, "input": text},
        timeout=30,
    )
    response.raise_for_status()
    results = response.json().get("results", [])
    if not results or not results[0].get("flagged"):
        return None

    categories = results[0].get("categories", {})
    return [name for name, flagged in categories.items() if flagged]
