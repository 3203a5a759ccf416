import uuid
from datetime import timedelta

import pytest

from conftest import SAMPLE_ANALYSIS_PAYLOAD, FakeImageProvider, FakeVisionAnalyzer, png_bytes
from jewelry_ai.ai.vision import VisionAnalysis, parse_analysis_payload
from jewelry_ai.auth import create_access_token
from jewelry_ai.config import settings
from jewelry_ai.db import AsyncSessionLocal
from jewelry_ai.deps import get_vision_analyzer
from jewelry_ai.exceptions import GENERIC_ANALYSIS_FAILURE_MESSAGE
from jewelry_ai.main import app
from jewelry_ai.models import AnalysisStatus, JobStatus, UpgradeAnalysis, utcnow
from jewelry_ai.services.upgrade import (
    list_recent_analyses,
    process_upgrade_preview_job,
    recover_stuck_analyses,
    run_vision_analysis,
    upload_image,
)


async def upload(client, guest="g1", content=None, filename="ring.png", content_type="image/png", headers=None):
    data = {"guestClientId": guest} if guest else {}
    return await client.post(
        "/upgrade/upload",
        files={"file": (filename, content if content is not None else png_bytes(), content_type)},
        data=data,
        headers=headers or {},
    )


async def add_analysis(
    db, status=AnalysisStatus.COMPLETED, user_id=None, guest_client_id="g1", suggestions=None, created_at=None
):
    analysis = UpgradeAnalysis(
        id=str(uuid.uuid4()),
        user_id=user_id,
        guest_client_id=None if user_id else guest_client_id,
        original_image_url="https://cdn.test/upgrade-images/2024/01/01/x.png",
        status=int(status),
        jewelry_type="ring",
        metal_type="yellow_gold",
        style="classic",
        suggestions=suggestions or [],
        created_at=created_at or utcnow(),
    )
    db.add(analysis)
    await db.commit()
    return analysis.id


@pytest.mark.asyncio
async def test_upload_analyze_and_preview_end_to_end(client, db, storage, provider, analyzer):
    r = await upload(client)
    assert r.status_code == 202
    body = r.json()
    analysis_id = body["analysisId"]
    assert body["status"] == AnalysisStatus.PENDING
    assert body["imageUrl"].startswith("https://cdn.test/upgrade-images/")
    assert body["imageUrl"].endswith(".png")
    assert analyzer.calls == [("base64", "image/png")]

    r = await client.get(f"/upgrade/analysis/{analysis_id}")
    assert r.status_code == 200
    analysis = r.json()
    assert analysis["status"] == AnalysisStatus.COMPLETED
    assert analysis["jewelryType"] == "ring"
    assert analysis["metalType"] == "white_gold"
    assert analysis["style"] == "classic"
    assert analysis["detectedStones"][0]["stoneType"] == "diamond"
    assert analysis["confidenceScore"] == 0.9
    assert analysis["suggestionCount"] == 2
    assert analysis["pieceDescription"] == "A solitaire ring with a round center stone."
    assert analysis["clarificationRequest"] is None

    r = await client.get(f"/upgrade/suggestions/{analysis_id}")
    assert r.status_code == 200
    suggestions = r.json()
    assert len(suggestions["suggestions"]) == 2
    assert all(0 <= s["category"] <= 3 for s in suggestions["suggestions"])
    assert [g["categoryId"] for g in suggestions["categories"]] == ["material_finish", "stone_setting"]
    assert suggestions["keepOriginal"]["isDefault"] is True
    by_title = {s["title"]: s for s in suggestions["suggestions"]}
    setting_id = by_title["Six-prong setting"]["id"]

    r = await client.post(
        "/upgrade/preview",
        json={"analysisId": analysis_id, "selectedSuggestionIds": [setting_id], "guestClientId": "g1"},
    )
    assert r.status_code == 202
    job = r.json()
    assert job["status"] == JobStatus.PENDING
    assert job["appliedSuggestionIds"] == [setting_id]
    assert job["keptOriginal"] is False
    assert job["originalImageUrl"] == body["imageUrl"]

    processed = await process_upgrade_preview_job(db, job["id"], provider)
    assert processed.status == JobStatus.COMPLETED

    r = await client.get(f"/upgrade/preview/{job['id']}")
    result = r.json()
    assert result["status"] == JobStatus.COMPLETED
    assert result["enhancedImageUrl"] == f"https://cdn.test/upgrade-previews/{analysis_id}/{job['id']}/preview.png"
    assert "Six-prong setting" in result["prompt"]
    assert "Upgrade to 18k white gold" not in result["prompt"]
    assert "Metal: bright white gold." in result["prompt"]


@pytest.mark.asyncio
async def test_keep_original_preview_ignores_selection(client, db, provider):
    analysis_id = (await upload(client)).json()["analysisId"]
    suggestion_ids = [s["id"] for s in (await client.get(f"/upgrade/suggestions/{analysis_id}")).json()["suggestions"]]

    r = await client.post(
        "/upgrade/preview",
        json={
            "analysisId": analysis_id,
            "selectedSuggestionIds": suggestion_ids,
            "keepOriginal": True,
            "guestClientId": "g1",
        },
    )
    assert r.status_code == 202
    job_id = r.json()["id"]
    assert r.json()["keptOriginal"] is True
    assert r.json()["appliedSuggestionIds"] == suggestion_ids

    job = await process_upgrade_preview_job(db, job_id, provider)
    assert job.status == JobStatus.COMPLETED
    assert "Enhancements applied" not in job.prompt


@pytest.mark.asyncio
async def test_unknown_suggestion_id_is_rejected(client):
    analysis_id = (await upload(client)).json()["analysisId"]
    r = await client.post(
        "/upgrade/preview",
        json={"analysisId": analysis_id, "selectedSuggestionIds": ["not-a-suggestion"], "guestClientId": "g1"},
    )
    assert r.status_code == 400
    assert "not-a-suggestion" in r.json()["message"]


@pytest.mark.asyncio
async def test_preview_requires_completed_analysis(client, db):
    analysis_id = await add_analysis(db, status=AnalysisStatus.ANALYZING)
    r = await client.post("/upgrade/preview", json={"analysisId": analysis_id, "guestClientId": "g1"})
    assert r.status_code == 400

    r = await client.get(f"/upgrade/suggestions/{analysis_id}")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_preview_for_foreign_analysis_is_forbidden(client, db):
    analysis_id = await add_analysis(db, user_id="owner")
    headers = {"Authorization": f"Bearer {create_access_token('intruder')}"}

    r = await client.post("/upgrade/preview", json={"analysisId": analysis_id}, headers=headers)
    assert r.status_code == 403

    r = await client.get(f"/upgrade/analysis/{analysis_id}", headers=headers)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_preview_for_missing_analysis_is_not_found(client):
    r = await client.post("/upgrade/preview", json={"analysisId": "missing", "guestClientId": "g1"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_authenticated_upload_is_owned_by_user(client, db):
    headers = {"Authorization": f"Bearer {create_access_token('u1')}"}
    analysis_id = (await upload(client, guest=None, headers=headers)).json()["analysisId"]

    analysis = await db.get(UpgradeAnalysis, analysis_id)
    assert analysis.user_id == "u1"
    assert analysis.guest_client_id is None

    assert (await client.get(f"/upgrade/analysis/{analysis_id}", headers=headers)).status_code == 200
    assert (await client.get(f"/upgrade/analysis/{analysis_id}")).status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content, content_type",
    [
        (b"plain text", "text/plain"),
        (b"", "image/png"),
    ],
)
async def test_invalid_uploads_are_rejected(client, storage, content, content_type):
    r = await upload(client, content=content, content_type=content_type)
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_anonymous_upload_needs_guest_id(client, storage):
    r = await upload(client, guest=None)
    assert r.status_code == 400
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_failed_vision_analysis_marks_analysis_failed(client):
    app.dependency_overrides[get_vision_analyzer] = lambda: FakeVisionAnalyzer(
        VisionAnalysis.failure("Analysis results could not be processed.")
    )
    analysis_id = (await upload(client)).json()["analysisId"]

    analysis = (await client.get(f"/upgrade/analysis/{analysis_id}")).json()
    assert analysis["status"] == AnalysisStatus.FAILED
    assert analysis["errorMessage"] == "Analysis results could not be processed."
    assert analysis["confidenceScore"] is None

    assert (await client.get(f"/upgrade/suggestions/{analysis_id}")).status_code == 404


class ExplodingAnalyzer(FakeVisionAnalyzer):
    async def analyze_base64(self, data, content_type="image/jpeg"):
        raise RuntimeError("vision backend unreachable")


@pytest.mark.asyncio
async def test_analyzer_exception_fails_analysis(db, storage):
    analysis = await upload_image(db, storage, png_bytes(), "ring.png", "image/png", None, "g1")

    result = await run_vision_analysis(db, analysis.id, ExplodingAnalyzer(), png_bytes(), "image/png")

    assert result.status == AnalysisStatus.FAILED
    assert result.error_message == "RuntimeError: vision backend unreachable"


@pytest.mark.asyncio
async def test_clarification_request_completes_with_low_confidence(db, storage):
    payload = dict(SAMPLE_ANALYSIS_PAYLOAD)
    payload["improvement_categories"] = []
    payload["clarification_request"] = {"type": "image_quality", "message": "Could you share a sharper photo?"}
    analyzer = FakeVisionAnalyzer(parse_analysis_payload(payload))

    analysis = await upload_image(db, storage, png_bytes(), "ring.png", "image/png", None, "g1")
    result = await run_vision_analysis(db, analysis.id, analyzer)

    assert analyzer.calls == [("url", analysis.original_image_url)]
    assert result.status == AnalysisStatus.COMPLETED
    assert result.confidence_score == 0.5
    assert result.suggestions == []
    assert result.analysis_data["clarificationRequest"]["message"] == "Could you share a sharper photo?"


@pytest.mark.asyncio
async def test_analysis_is_only_run_once(db, storage, analyzer):
    analysis = await upload_image(db, storage, png_bytes(), "ring.png", "image/png", None, "g1")
    await run_vision_analysis(db, analysis.id, analyzer)
    await run_vision_analysis(db, analysis.id, analyzer)
    assert len(analyzer.calls) == 1


@pytest.mark.asyncio
async def test_upgrade_preview_failure_marks_job_failed(client, db, storage):
    analysis_id = (await upload(client)).json()["analysisId"]
    job_id = (
        await client.post("/upgrade/preview", json={"analysisId": analysis_id, "guestClientId": "g1"})
    ).json()["id"]

    job = await process_upgrade_preview_job(db, job_id, FakeImageProvider(storage, fail_on_call=1))

    assert job.status == JobStatus.FAILED
    assert job.enhanced_image_url is None
    body = (await client.get(f"/upgrade/preview/{job_id}")).json()
    assert body["errorMessage"] == "ImageGenerationError: provider exploded"


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected(client, storage, monkeypatch):
    monkeypatch.setattr(settings, "UPGRADE_MAX_UPLOAD_BYTES", 1024)

    r = await upload(client, content=b"\x89PNG" + b"\0" * 4096)

    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"
    assert "maximum size" in r.json()["message"]
    assert storage.objects == {}


@pytest.mark.asyncio
async def test_upload_at_the_size_limit_is_stored_whole(client, storage, monkeypatch):
    content = png_bytes()
    monkeypatch.setattr(settings, "UPGRADE_MAX_UPLOAD_BYTES", len(content))

    r = await upload(client, content=content)

    assert r.status_code == 202
    [(stored, content_type)] = storage.objects.values()
    assert stored == content
    assert content_type == "image/png"


@pytest.mark.asyncio
async def test_recent_analyses_need_authentication(client):
    r = await client.get("/upgrade/recent")
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_recent_analyses_are_own_completed_newest_first(client, db):
    now = utcnow()
    oldest = await add_analysis(db, user_id="u1", created_at=now - timedelta(hours=3))
    newest = await add_analysis(db, user_id="u1", created_at=now - timedelta(hours=1))
    middle = await add_analysis(db, user_id="u1", created_at=now - timedelta(hours=2))
    await add_analysis(db, user_id="u1", status=AnalysisStatus.FAILED, created_at=now)
    await add_analysis(db, user_id="u1", status=AnalysisStatus.ANALYZING, created_at=now)
    await add_analysis(db, user_id="someone-else", created_at=now)
    await add_analysis(db, guest_client_id="g1", created_at=now)
    headers = {"Authorization": f"Bearer {create_access_token('u1')}"}

    r = await client.get("/upgrade/recent", headers=headers)
    assert r.status_code == 200
    assert [a["id"] for a in r.json()] == [newest, middle, oldest]
    assert all(a["status"] == AnalysisStatus.COMPLETED for a in r.json())

    r = await client.get("/upgrade/recent", params={"take": 2}, headers=headers)
    assert [a["id"] for a in r.json()] == [newest, middle]


@pytest.mark.asyncio
@pytest.mark.parametrize("take, expected", [(0, 1), (-3, 1), (1, 1), (5, 5), (20, 20), (50, 20)])
async def test_recent_analyses_take_is_clamped(db, take, expected):
    now = utcnow()
    for minutes in range(25):
        await add_analysis(db, user_id="u1", created_at=now - timedelta(minutes=minutes))

    assert len(await list_recent_analyses(db, "u1", take)) == expected


@pytest.mark.asyncio
async def test_recent_analyses_default_to_five(client, db):
    for _ in range(7):
        await add_analysis(db, user_id="u1")
    headers = {"Authorization": f"Bearer {create_access_token('u1')}"}

    r = await client.get("/upgrade/recent", headers=headers)
    assert len(r.json()) == 5


class RecoveredMidwayAnalyzer(FakeVisionAnalyzer):
    """Fails the analysis through stuck-analysis recovery while the vision call runs."""

    async def analyze_image_url(self, image_url):
        async with AsyncSessionLocal() as other:
            await recover_stuck_analyses(other, threshold=-1)
        return await super().analyze_image_url(image_url)


@pytest.mark.asyncio
async def test_analysis_failed_by_recovery_is_not_completed_afterwards(db, storage):
    analysis = await upload_image(db, storage, png_bytes(), "ring.png", "image/png", None, "g1")

    result = await run_vision_analysis(db, analysis.id, RecoveredMidwayAnalyzer())

    assert result.status == AnalysisStatus.FAILED
    assert result.error_message.startswith("TimeoutError:")
    assert result.suggestions is None
    assert result.completed_at is None


@pytest.mark.asyncio
async def test_failed_analysis_message_is_masked_in_production(client, monkeypatch):
    app.dependency_overrides[get_vision_analyzer] = lambda: FakeVisionAnalyzer(
        VisionAnalysis.failure("Analysis results could not be processed.")
    )
    analysis_id = (await upload(client)).json()["analysisId"]

    monkeypatch.setattr(settings, "ENVIRONMENT", "production")
    body = (await client.get(f"/upgrade/analysis/{analysis_id}")).json()
    assert body["status"] == AnalysisStatus.FAILED
    assert body["errorMessage"] == GENERIC_ANALYSIS_FAILURE_MESSAGE
