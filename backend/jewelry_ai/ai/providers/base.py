from __future__ import annotations

import asyncio
import io
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from PIL import Image, UnidentifiedImageError

from ...config import settings
from ...exceptions import ImageGenerationError
from ...logger import logger
from ...storage import S3Storage, ai_frame_key, ai_preview_key

MIN_FRAME_COUNT = 4
MAX_FRAME_COUNT = 36


def frame_prompt(prompt: str, index: int, frame_count: int) -> str:
    angle = index * 360.0 / frame_count
    return f"{prompt}, view angle {angle:.0f} degrees around the jewelry piece, consistent lighting and style"


def to_png_bytes(data: bytes) -> bytes:
    """Re-encode whatever the provider returned as PNG."""
    if not data:
        raise ImageGenerationError("Provider returned an empty image")
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format == "PNG":
                return data
            buf = io.BytesIO()
            img.convert("RGBA" if "A" in img.getbands() else "RGB").save(buf, format="PNG")
            return buf.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageGenerationError(f"Provider returned data that is not an image: {e}")


class ImageProvider(ABC):
    """
    Text-to-image backend.

    Subclasses only implement ``generate_image_bytes``; storing results
    under the preview key layout is shared.
    """

    name = "base"

    def __init__(
        self,
        storage: S3Storage,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        frame_delay: Optional[float] = None,
    ):
        self.storage = storage
        self.transport = transport
        self.frame_delay = settings.AI_FRAME_DELAY_SECONDS if frame_delay is None else frame_delay

    @abstractmethod
    async def generate_image_bytes(self, prompt: str) -> bytes:
        raise NotImplementedError

    def _client(self, timeout: float, base_url: str = "") -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=self.transport)

    async def _download(self, url: str, timeout: float) -> bytes:
        async with self._client(timeout) as client:
            response = await client.get(url)
        if response.status_code >= 400:
            raise ImageGenerationError(f"Failed to download generated image: HTTP {response.status_code}")
        if not response.content:
            raise ImageGenerationError("Downloaded generated image is empty")
        return response.content

    async def _store(self, data: bytes, key: str) -> str:
        png = to_png_bytes(data)
        return await asyncio.to_thread(self.storage.upload, png, key, "image/png")

    async def generate_to_key(self, prompt: str, key: str) -> str:
        data = await self.generate_image_bytes(prompt)
        return await self._store(data, key)

    async def generate_single(self, prompt: str, configuration_id: str, job_id: str) -> str:
        logger.info(
            f"Generating single preview with {self.name}",
            extra={"provider": self.name, "configuration_id": configuration_id, "job_id": job_id},
        )
        return await self.generate_to_key(prompt, ai_preview_key(configuration_id, job_id))

    async def generate_frame_set(self, prompt: str, configuration_id: str, job_id: str, frame_count: int) -> List[str]:
        if frame_count < MIN_FRAME_COUNT or frame_count > MAX_FRAME_COUNT:
            raise ValueError(f"frame_count must be between {MIN_FRAME_COUNT} and {MAX_FRAME_COUNT}")

        logger.info(
            f"Generating {frame_count} frames with {self.name}",
            extra={"provider": self.name, "configuration_id": configuration_id, "job_id": job_id},
        )
        urls: List[str] = []
        for index in range(frame_count):
            url = await self.generate_to_key(
                frame_prompt(prompt, index, frame_count),
                ai_frame_key(configuration_id, job_id, index),
            )
            urls.append(url)
            if index < frame_count - 1 and self.frame_delay > 0:
                await asyncio.sleep(self.frame_delay)

        return urls
