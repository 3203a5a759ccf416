import base64
import io
import json

import httpx
import pytest
from PIL import Image

from conftest import DummyStorage, FakeImageProvider, png_bytes
from jewelry_ai.ai.providers.base import frame_prompt, to_png_bytes
from jewelry_ai.ai.providers.ideogram import IdeogramImageProvider
from jewelry_ai.ai.providers.leonardo import LeonardoImageProvider
from jewelry_ai.ai.providers.openai import OpenAIImageProvider
from jewelry_ai.ai.providers.registry import build_image_provider
from jewelry_ai.exceptions import ImageGenerationError


def jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 10, 10)).save(buf, format="JPEG")
    return buf.getvalue()


def test_frame_prompt_angles():
    assert frame_prompt("ring", 0, 12).endswith("view angle 0 degrees around the jewelry piece, consistent lighting and style")
    assert "view angle 30 degrees" in frame_prompt("ring", 1, 12)
    assert "view angle 270 degrees" in frame_prompt("ring", 3, 4)


def test_to_png_bytes_converts_jpeg():
    data = to_png_bytes(jpeg_bytes())
    assert data.startswith(b"\x89PNG")


def test_to_png_bytes_rejects_garbage():
    with pytest.raises(ImageGenerationError):
        to_png_bytes(b"definitely not an image")
    with pytest.raises(ImageGenerationError):
        to_png_bytes(b"")


def test_build_image_provider_by_name():
    storage = DummyStorage()
    assert isinstance(build_image_provider("OpenAI", storage), OpenAIImageProvider)
    assert isinstance(build_image_provider("ideogram", storage), IdeogramImageProvider)
    assert isinstance(build_image_provider(" leonardo ", storage), LeonardoImageProvider)
    with pytest.raises(ValueError):
        build_image_provider("midjourney", storage)


@pytest.mark.asyncio
async def test_openai_provider_stores_b64_image():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(png_bytes()).decode()}]})

    storage = DummyStorage()
    provider = OpenAIImageProvider(storage, api_key="sk-test", transport=httpx.MockTransport(handler))

    url = await provider.generate_single("a gold ring", "cfg-1", "job-1")

    assert url == "https://cdn.test/ai-previews/cfg-1/job-1/preview.png"
    data, content_type = storage.objects["ai-previews/cfg-1/job-1/preview.png"]
    assert content_type == "image/png"
    assert data.startswith(b"\x89PNG")
    assert seen["url"].endswith("/v1/images/generations")
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["prompt"] == "a gold ring"
    assert seen["body"]["n"] == 1


@pytest.mark.asyncio
async def test_openai_provider_downloads_url_result():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"data": [{"url": "https://images.test/out.jpg"}]})
        assert str(request.url) == "https://images.test/out.jpg"
        return httpx.Response(200, content=jpeg_bytes())

    storage = DummyStorage()
    provider = OpenAIImageProvider(storage, api_key="sk-test", transport=httpx.MockTransport(handler))

    await provider.generate_single("a gold ring", "cfg-1", "job-2")
    data, _ = storage.objects["ai-previews/cfg-1/job-2/preview.png"]
    assert data.startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_openai_provider_error_status_raises():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream exploded"))
    storage = DummyStorage()
    provider = OpenAIImageProvider(storage, api_key="sk-test", transport=transport)

    with pytest.raises(ImageGenerationError) as exc_info:
        await provider.generate_single("a ring", "cfg-1", "job-3")
    assert "500" in exc_info.value.message
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_openai_provider_network_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = OpenAIImageProvider(DummyStorage(), api_key="sk-test", transport=httpx.MockTransport(handler))
    with pytest.raises(ImageGenerationError):
        await provider.generate_image_bytes("a ring")


@pytest.mark.asyncio
async def test_provider_without_api_key_fails():
    provider = OpenAIImageProvider(DummyStorage(), api_key="")
    with pytest.raises(ImageGenerationError):
        await provider.generate_image_bytes("a ring")


@pytest.mark.asyncio
async def test_ideogram_provider_sends_multipart_form():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            request.read()
            seen["path"] = request.url.path
            seen["api_key"] = request.headers.get("api-key")
            seen["content_type"] = request.headers.get("content-type")
            seen["body"] = request.content
            return httpx.Response(200, json={"data": [{"url": "https://ideogram.test/img.png"}]})
        return httpx.Response(200, content=png_bytes())

    storage = DummyStorage()
    provider = IdeogramImageProvider(storage, api_key="ideo-key", transport=httpx.MockTransport(handler))

    await provider.generate_single("a silver pendant", "cfg-9", "job-9")

    assert "ai-previews/cfg-9/job-9/preview.png" in storage.objects
    assert seen["path"] == "/v1/ideogram-v3/generate"
    assert seen["api_key"] == "ideo-key"
    assert seen["content_type"].startswith("multipart/form-data")
    assert b'name="prompt"' in seen["body"]
    assert b"a silver pendant" in seen["body"]
    assert b'name="aspect_ratio"' in seen["body"]


@pytest.mark.asyncio
async def test_ideogram_provider_without_url_fails():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []}))
    provider = IdeogramImageProvider(DummyStorage(), api_key="ideo-key", transport=transport)
    with pytest.raises(ImageGenerationError):
        await provider.generate_image_bytes("a ring")


@pytest.mark.asyncio
async def test_leonardo_provider_polls_until_complete():
    polls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["prompt"] == "a bracelet"
            return httpx.Response(200, json={"sdGenerationJob": {"generationId": "gen-1"}})
        if request.url.path.endswith("/generations/gen-1"):
            polls.append(1)
            if len(polls) < 3:
                return httpx.Response(200, json={"generations_by_pk": {"status": "PENDING"}})
            return httpx.Response(
                200,
                json={
                    "generations_by_pk": {
                        "status": "COMPLETE",
                        "generated_images": [{"url": "https://leonardo.test/img.jpg"}],
                    }
                },
            )
        return httpx.Response(200, content=jpeg_bytes())

    storage = DummyStorage()
    provider = LeonardoImageProvider(
        storage, api_key="leo-key", poll_interval=0, transport=httpx.MockTransport(handler)
    )

    url = await provider.generate_single("a bracelet", "cfg-2", "job-2")

    assert url.endswith("ai-previews/cfg-2/job-2/preview.png")
    assert len(polls) == 3


@pytest.mark.asyncio
async def test_leonardo_provider_failed_generation_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"sdGenerationJob": {"generationId": "gen-2"}})
        return httpx.Response(200, json={"generations_by_pk": {"status": "FAILED"}})

    provider = LeonardoImageProvider(
        DummyStorage(), api_key="leo-key", poll_interval=0, transport=httpx.MockTransport(handler)
    )
    with pytest.raises(ImageGenerationError) as exc_info:
        await provider.generate_image_bytes("a bracelet")
    assert "gen-2" in exc_info.value.message


@pytest.mark.asyncio
async def test_leonardo_provider_gives_up_after_max_attempts():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"sdGenerationJob": {"generationId": "gen-3"}})
        return httpx.Response(200, json={"generations_by_pk": {"status": "PENDING"}})

    provider = LeonardoImageProvider(
        DummyStorage(), api_key="leo-key", poll_interval=0, transport=httpx.MockTransport(handler)
    )
    provider.max_attempts = 2
    with pytest.raises(ImageGenerationError) as exc_info:
        await provider.generate_image_bytes("a bracelet")
    assert "did not finish" in exc_info.value.message


@pytest.mark.asyncio
async def test_frame_set_uses_frame_keys_in_order():
    storage = DummyStorage()
    provider = FakeImageProvider(storage)

    urls = await provider.generate_frame_set("a ring", "cfg-1", "job-1", 4)

    assert urls == [f"https://cdn.test/ai-previews/cfg-1/job-1/frames/frame_{i:02d}.png" for i in range(4)]
    assert "view angle 0 degrees" in provider.prompts[0]
    assert "view angle 270 degrees" in provider.prompts[3]


@pytest.mark.asyncio
@pytest.mark.parametrize("frame_count", [3, 37])
async def test_frame_set_rejects_out_of_range_counts(frame_count):
    provider = FakeImageProvider(DummyStorage())
    with pytest.raises(ValueError):
        await provider.generate_frame_set("a ring", "cfg-1", "job-1", frame_count)


@pytest.mark.asyncio
async def test_frame_set_stops_on_first_failure():
    storage = DummyStorage()
    provider = FakeImageProvider(storage, fail_on_call=3)

    with pytest.raises(ImageGenerationError):
        await provider.generate_frame_set("a ring", "cfg-1", "job-1", 6)

    assert len(provider.prompts) == 3
    assert len(storage.objects) == 2
