from typing import Dict, Type

from .base import ImageProvider
from .ideogram import IdeogramImageProvider
from .leonardo import LeonardoImageProvider
from .openai import OpenAIImageProvider

PROVIDERS: Dict[str, Type[ImageProvider]] = {
    OpenAIImageProvider.name: OpenAIImageProvider,
    IdeogramImageProvider.name: IdeogramImageProvider,
    LeonardoImageProvider.name: LeonardoImageProvider,
}


def build_image_provider(name: str, storage, **kwargs) -> ImageProvider:
    try:
        provider_cls = PROVIDERS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown AI image provider '{name}', expected one of {sorted(PROVIDERS)}")
    return provider_cls(storage, **kwargs)
