"""
Gemini Imagen REST client: text prompt to vertical still image.
"""

import base64
import logging

import httpx

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def enhance_prompt(prompt: str) -> str:
    return (
        f"{prompt}. High quality, professional, suitable for vertical video "
        f"(9:16 aspect ratio). No text or watermarks."
    )


async def generate_image(
    client: httpx.AsyncClient,
    api_key: str,
    model: str,
    prompt: str,
    aspect_ratio: str = "9:16",
) -> bytes:
    """
    Generate one image and return its decoded bytes.

    Raises:
        RuntimeError: missing key or no image in the response.
        httpx.HTTPStatusError: non-2xx from the API.
    """
    if not api_key:
        raise RuntimeError("GEMINI_API_KEY is not configured")

    response = await client.post(
        f"{API_BASE}/models/{model}:predict",
        headers={"x-goog-api-key": api_key},
        json={
            "instances": [{"prompt": enhance_prompt(prompt)}],
            "parameters": {
                "sampleCount": 1,
                "aspectRatio": aspect_ratio,
                "personGeneration": "allow_adult",
            },
        },
        timeout=120,
    )
    response.raise_for_status()
    result = response.json()

    predictions = result.get("predictions", [])
    if not predictions or "bytesBase64Encoded" not in predictions[0]:
        raise RuntimeError("Gemini response contained no image data.")

    return base64.b64decode(predictions[0]["bytesBase64Encoded"])
