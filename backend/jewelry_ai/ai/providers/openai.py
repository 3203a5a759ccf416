from __future__ import annotations

import base64
import binascii

import httpx

from ...config import settings
from ...exceptions import ImageGenerationError
from ...logger import logger
from .base import ImageProvider


class OpenAIImageProvider(ImageProvider):
    name = "openai"

    def __init__(self, storage, api_key=None, **kwargs):
        super().__init__(storage, **kwargs)
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = settings.OPENAI_BASE_URL.rstrip("/")
        self.timeout = settings.OPENAI_TIMEOUT_SECONDS

    async def generate_image_bytes(self, prompt: str) -> bytes:
        if not self.api_key:
            raise ImageGenerationError("OpenAI API key is not configured")

        payload = {
            "model": settings.OPENAI_IMAGE_MODEL,
            "prompt": prompt,
            "n": 1,
            "size": settings.OPENAI_IMAGE_SIZE,
            "quality": settings.OPENAI_IMAGE_QUALITY,
            "response_format": "b64_json",
        }
        try:
            async with self._client(self.timeout, self.base_url) as client:
                response = await client.post(
                    "/images/generations",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"OpenAI request failed: {type(e).__name__}: {e}")

        if response.status_code >= 400:
            logger.error(f"OpenAI image API error: {response.status_code} - {response.text[:500]}")
            raise ImageGenerationError(f"OpenAI API returned {response.status_code}")

        try:
            data = response.json().get("data") or []
        except ValueError:
            raise ImageGenerationError("OpenAI API returned a non-JSON response")
        if not data or not isinstance(data[0], dict):
            raise ImageGenerationError("OpenAI API returned no image data")

        item = data[0]
        if item.get("b64_json"):
            try:
                return base64.b64decode(item["b64_json"])
            except (binascii.Error, ValueError):
                raise ImageGenerationError("OpenAI API returned invalid base64 image data")
        if item.get("url"):
            try:
                return await self._download(item["url"], self.timeout)
            except httpx.HTTPError as e:
                raise ImageGenerationError(f"Failed to download OpenAI image: {e}")

        raise ImageGenerationError("OpenAI API response contained neither b64_json nor url")
