from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from ...config import settings
from ...exceptions import ImageGenerationError
from ...logger import logger
from .base import ImageProvider


class LeonardoImageProvider(ImageProvider):
    """
    Leonardo generations are asynchronous on their side: submit, then poll
    the generation until it reports COMPLETE or FAILED.
    """

    name = "leonardo"

    def __init__(self, storage, api_key=None, poll_interval: Optional[float] = None, **kwargs):
        super().__init__(storage, **kwargs)
        self.api_key = api_key if api_key is not None else settings.LEONARDO_API_KEY
        self.base_url = settings.LEONARDO_BASE_URL.rstrip("/")
        self.timeout = settings.LEONARDO_TIMEOUT_SECONDS
        self.poll_interval = settings.LEONARDO_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_attempts = settings.LEONARDO_MAX_POLL_ATTEMPTS

    async def generate_image_bytes(self, prompt: str) -> bytes:
        if not self.api_key:
            raise ImageGenerationError("Leonardo API key is not configured")

        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        payload = {
            "prompt": prompt,
            "modelId": settings.LEONARDO_MODEL_ID,
            "width": 1024,
            "height": 1024,
            "num_images": 1,
            "guidance_scale": settings.LEONARDO_GUIDANCE_SCALE,
            "photoReal": settings.LEONARDO_PHOTO_REAL,
            "photoRealVersion": "v2",
            "alchemy": settings.LEONARDO_ALCHEMY,
            "negative_prompt": settings.LEONARDO_NEGATIVE_PROMPT,
        }
        try:
            async with self._client(self.timeout, self.base_url) as client:
                response = await client.post("/generations", json=payload, headers=headers)
                if response.status_code >= 400:
                    logger.error(f"Leonardo API error: {response.status_code} - {response.text[:500]}")
                    raise ImageGenerationError(f"Leonardo API returned {response.status_code}")

                try:
                    job = response.json().get("sdGenerationJob") or {}
                except ValueError:
                    raise ImageGenerationError("Leonardo API returned a non-JSON response")
                generation_id = job.get("generationId")
                if not generation_id:
                    raise ImageGenerationError("Leonardo API returned no generationId")

                image_url = await self._wait_for_image(client, generation_id, headers)
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Leonardo request failed: {type(e).__name__}: {e}")

        try:
            return await self._download(image_url, self.timeout)
        except httpx.HTTPError as e:
            raise ImageGenerationError(f"Failed to download Leonardo image: {e}")

    async def _wait_for_image(self, client: httpx.AsyncClient, generation_id: str, headers) -> str:
        for attempt in range(1, self.max_attempts + 1):
            await asyncio.sleep(self.poll_interval)
            response = await client.get(f"/generations/{generation_id}", headers=headers)

            if response.status_code >= 500:
                logger.warning(f"Leonardo poll {attempt} got HTTP {response.status_code}, retrying")
                continue
            if response.status_code >= 400:
                raise ImageGenerationError(f"Leonardo status check returned {response.status_code}")

            try:
                generation = response.json().get("generations_by_pk") or {}
            except ValueError:
                raise ImageGenerationError("Leonardo status check returned a non-JSON response")
            status = str(generation.get("status") or "").upper()

            if status == "COMPLETE":
                images = generation.get("generated_images") or []
                url = images[0].get("url") if images and isinstance(images[0], dict) else None
                if not url:
                    raise ImageGenerationError("Leonardo generation completed without an image url")
                return url
            if status == "FAILED":
                raise ImageGenerationError(f"Leonardo generation {generation_id} failed")

            logger.info(
                f"Leonardo generation {generation_id} is {status or 'PENDING'}",
                extra={"attempt": attempt, "generation_id": generation_id},
            )

        raise ImageGenerationError(
            f"Leonardo generation {generation_id} did not finish after {self.max_attempts} polls"
        )
