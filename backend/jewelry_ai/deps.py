"""
Process-wide collaborators, built once and shared by reference.

FastAPI routes receive these through ``Depends`` so tests can swap them
with ``app.dependency_overrides``; workers call the same functions directly.
"""
from functools import lru_cache

from .ai.providers.base import ImageProvider
from .ai.providers.registry import build_image_provider
from .ai.vision import OpenAIVisionClient, VisionAnalyzer
from .config import settings
from .storage import S3Storage


@lru_cache(maxsize=1)
def get_storage() -> S3Storage:
    return S3Storage()


@lru_cache(maxsize=1)
def get_image_provider() -> ImageProvider:
    return build_image_provider(settings.AI_IMAGE_PROVIDER, get_storage())


@lru_cache(maxsize=1)
def get_vision_analyzer() -> VisionAnalyzer:
    return OpenAIVisionClient()
