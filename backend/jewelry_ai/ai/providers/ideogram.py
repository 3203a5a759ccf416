from __future__ import annotations

import httpx

from ...config import settings
from ...exceptions import ImageGenerationError
from ...logger import logger
from .base import ImageProvider


class IdeogramImageProvider(ImageProvider):
    name = "ideogram"

    def __init__(self, storage, api_key=None, **kwargs):
        super().__init__(storage, **kwargs)
        self.api_key = api_key if api_key is not None else settings.IDEOGRAM_API_KEY
        self.base_url = settings.IDEOGRAM_BASE_URL.rstrip("/")
        self.timeout = settings.IDEOGRAM_TIMEOUT_SECONDS

    async def generate_image_bytes(self, prompt: str) -> bytes:
        if not self.api_key:
            raise ImageGenerationError("Ideogram API key is not configured")

        # Ideogram v3 only accepts multipart form fields
        fields = {
            "prompt": prompt,
            "aspect_ratio": settings.IDEOGRAM_ASPECT_RATIO,
            "rendering_speed": settings.IDEOGRAM_RENDERING_SPEED,
            "style_type": settings.IDEOGRAM_STYLE_TYPE,
            "negative_prompt": settings.IDEOGRAM_NEGATIVE_PROMPT,
        }
        try:
            async with self._client(self.timeout, self.base_url) as client:
                response = await client.post(
                    settings.IDEOGRAM_GENERATE_PATH,
                    files={k: (None, v) for k, v in fields.items()},
                    headers={"Api-Key": self.api_key},
                )
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Ideogram request failed: {type(e).__name__}: {e}")

        if response.status_code >= 400:
            logger.error(f"Ideogram API error: {response.status_code} - {response.text[:500]}")
            raise ImageGenerationError(f"Ideogram API returned {response.status_code}")

        try:
            data = response.json().get("data") or []
        except ValueError:
            raise ImageGenerationError("Ideogram API returned a non-JSON response")
        url = data[0].get("url") if data and isinstance(data[0], dict) else None
        if not url:
            raise ImageGenerationError("Ideogram API returned no image url")

        try:
            return await self._download(url, self.timeout)
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Failed to download Ideogram image: {e}")
