import io
import os
import tempfile
import uuid

_TMP_DIR = tempfile.mkdtemp(prefix="jewelry_ai_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'test.db')}")
os.environ.setdefault("AWS_ENDPOINT_URL", "https://s3.test")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET_NAME", "jewelry-test")
os.environ.setdefault("S3_PUBLIC_BASE_URL", "https://cdn.test")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image

from jewelry_ai.ai.providers.base import ImageProvider
from jewelry_ai.ai.vision import VisionAnalysis, VisionAnalyzer, parse_analysis_payload
from jewelry_ai.db import AsyncSessionLocal, engine
from jewelry_ai.deps import get_storage, get_vision_analyzer
from jewelry_ai.main import app
from jewelry_ai.models import (
    Base,
    Category,
    ConfigurationStone,
    JewelryBaseModel,
    JewelryConfiguration,
    Material,
    StoneType,
)


def png_bytes(color=(255, 255, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, format="PNG")
    return buf.getvalue()


class DummyStorage:
    def __init__(self, fail_upload: bool = False):
        self.fail_upload = fail_upload
        self.objects = {}

    def public_url(self, key: str) -> str:
        return f"https://cdn.test/{key}"

    def upload(self, data: bytes, key: str, content_type: str) -> str:
        if self.fail_upload:
            from jewelry_ai.exceptions import S3StorageError
            raise S3StorageError(f"Failed to upload {key}: boom")
        self.objects[key] = (data, content_type)
        return self.public_url(key)

    def delete(self, key: str) -> bool:
        return self.objects.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return key in self.objects


class FakeImageProvider(ImageProvider):
    name = "fake"

    def __init__(self, storage, fail_on_call=None):
        super().__init__(storage, frame_delay=0)
        self.prompts = []
        self.fail_on_call = fail_on_call

    async def generate_image_bytes(self, prompt: str) -> bytes:
        self.prompts.append(prompt)
        if self.fail_on_call is not None and len(self.prompts) == self.fail_on_call:
            from jewelry_ai.exceptions import ImageGenerationError
            raise ImageGenerationError("provider exploded")
        return png_bytes()


SAMPLE_ANALYSIS_PAYLOAD = {
    "piece_description": "A solitaire ring with a round center stone.",
    "confidence_note": "The photo is clear; the metal appears to be white gold.",
    "detected_attributes": {
        "jewelry_type": "ring",
        "has_stones": True,
        "stone_description": "one round diamond in a four-prong setting",
        "apparent_metal": "appears to be white gold",
        "apparent_finish": "high polish",
        "style_character": "classic solitaire",
    },
    "improvement_categories": [
        {
            "category_id": "material_finish",
            "category_label": "Material & finish refinement",
            "suggestions": [
                {
                    "suggestion_id": "mf-1",
                    "title": "Upgrade to 18k white gold",
                    "description": "Switch the band to 18k white gold.",
                    "benefit": "Higher purity holds rhodium plating longer.",
                    "impact_level": "Subtle",
                    "character_note": None,
                }
            ],
        },
        {
            "category_id": "stone_setting",
            "category_label": "Stone or setting enhancement",
            "suggestions": [
                {
                    "suggestion_id": "ss-1",
                    "title": "Six-prong setting",
                    "description": "Replace the four prongs with six.",
                    "benefit": "Better protection for the center stone.",
                    "impact_level": "moderate",
                }
            ],
        },
        {
            "category_id": "proportion_balance",
            "category_label": "Proportions & balance",
            "suggestions": [],
        },
    ],
    "keep_original": {
        "title": "Keep Original Design",
        "description": "Preserve the piece exactly as designed.",
        "is_default": True,
    },
    "preview_guidance": {
        "summary": "A brighter, more secure solitaire.",
        "key_visual_changes": ["whiter band", "six prongs"],
    },
    "analysis_limitations": None,
    "clarification_request": None,
}


class FakeVisionAnalyzer(VisionAnalyzer):
    def __init__(self, result: VisionAnalysis = None):
        self.result = result or parse_analysis_payload(SAMPLE_ANALYSIS_PAYLOAD)
        self.calls = []

    async def analyze_image_url(self, image_url: str) -> VisionAnalysis:
        self.calls.append(("url", image_url))
        return self.result

    async def analyze_base64(self, data: str, content_type: str = "image/jpeg") -> VisionAnalysis:
        self.calls.append(("base64", content_type))
        return self.result


@pytest_asyncio.fixture
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db(database):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def storage():
    return DummyStorage()


@pytest.fixture
def provider(storage):
    return FakeImageProvider(storage)


@pytest.fixture
def analyzer():
    return FakeVisionAnalyzer()


@pytest_asyncio.fixture
async def client(database, storage, provider, analyzer):
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_vision_analyzer] = lambda: analyzer
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def seed_configuration(
    db,
    user_id=None,
    engraving_text=None,
    metadata_json=None,
    stones=None,
    material=None,
) -> str:
    """
    Insert a ring configuration with its catalog rows; returns the configuration id.

    ``stones`` is a list of (code, name, color, position_index, carat_weight, count).
    """
    suffix = uuid.uuid4().hex[:8]
    category = Category(
        code=f"ring-{suffix}",
        name="Ring",
        description="Finger ring",
        ai_category_description="A finger ring worn on the hand",
    )
    db.add(category)
    await db.flush()

    base_model = JewelryBaseModel(
        id=str(uuid.uuid4()),
        category_id=category.id,
        name="Halo Ring",
        code=f"halo-{suffix}",
        description="Ring with a halo of small stones",
        ai_description="Classic halo engagement ring with a raised center setting",
        base_price=500,
        metadata_json=metadata_json,
    )
    mat = material or Material(
        code=f"gold-18k-{suffix}",
        name="18K Yellow Gold",
        metal_type="gold",
        karat=18,
        color_hex="#FFD700",
    )
    db.add_all([base_model, mat])
    await db.flush()

    configuration = JewelryConfiguration(
        id=str(uuid.uuid4()),
        user_id=user_id,
        base_model_id=base_model.id,
        material_id=mat.id,
        name="My ring",
        engraving_text=engraving_text,
    )
    db.add(configuration)
    await db.flush()

    stone_types = {}
    for code, name, color, position, carats, count in stones or []:
        if code not in stone_types:
            stone_type = StoneType(code=f"{code}-{suffix}", name=name, color=color)
            db.add(stone_type)
            await db.flush()
            stone_types[code] = stone_type
        db.add(
            ConfigurationStone(
                id=str(uuid.uuid4()),
                configuration_id=configuration.id,
                stone_type_id=stone_types[code].id,
                position_index=position,
                carat_weight=carats,
                count=count,
            )
        )

    await db.commit()
    configuration_id = configuration.id
    db.expunge_all()
    return configuration_id
