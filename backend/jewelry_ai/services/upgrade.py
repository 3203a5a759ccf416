from __future__ import annotations

import asyncio
import base64
import os
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..ai.prompts import build_upgrade_preview_prompt
from ..ai.providers.base import ImageProvider
from ..ai.vision import VisionAnalysis, VisionAnalyzer
from ..config import settings
from ..exceptions import (
    GENERIC_ANALYSIS_FAILURE_MESSAGE,
    AccessDeniedError,
    ImageGenerationError,
    InvalidRequestError,
    NotFoundError,
    public_error_message,
)
from ..logger import logger
from ..models import (
    AnalysisStatus,
    JobStatus,
    SuggestionCategory,
    UpgradeAnalysis,
    UpgradePreviewJob,
    utcnow,
)
from ..schemas import (
    CreateUpgradePreviewRequest,
    KeepOriginalDto,
    SuggestionGroup,
    UpgradeAnalysisResponse,
    UpgradePreviewJobResponse,
    UpgradeSuggestion,
    UpgradeSuggestionsResponse,
)
from ..storage import S3Storage, upgrade_image_key, upgrade_preview_key
from .ai_preview import resolve_owner
from .job_state import advance_analysis, advance_job, finish_analysis, finish_job, is_terminal

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}

CATEGORY_IDS = {
    "material_finish": SuggestionCategory.MATERIAL,
    "stone_setting": SuggestionCategory.STONES,
    "proportion_balance": SuggestionCategory.PROPORTIONS,
    "craftsmanship_detail": SuggestionCategory.CRAFTSMANSHIP,
}
CATEGORY_KEYS = {value: key for key, value in CATEGORY_IDS.items()}
CATEGORY_LABELS = {
    SuggestionCategory.MATERIAL: "Material & Finish",
    SuggestionCategory.STONES: "Stone & Setting",
    SuggestionCategory.PROPORTIONS: "Proportions & Balance",
    SuggestionCategory.CRAFTSMANSHIP: "Craftsmanship & Detail",
}

MAX_TITLE_LENGTH = 100

RECENT_ANALYSES_DEFAULT = 5
RECENT_ANALYSES_MAX = 20

_JEWELRY_TYPES = [
    (re.compile(r"\bearrings?\b"), "earrings"),
    (re.compile(r"\bpendants?\b"), "pendant"),
    (re.compile(r"\bnecklaces?\b"), "necklace"),
    (re.compile(r"\bbracelets?\b"), "bracelet"),
    (re.compile(r"\bbrooch(es)?\b"), "brooch"),
    (re.compile(r"\brings?\b"), "ring"),
]

_STONE_KEYWORDS = [
    "diamond", "sapphire", "ruby", "emerald", "moissanite", "topaz", "amethyst", "aquamarine",
]

_STYLE_KEYWORDS = [
    (("classic",), "classic"),
    (("modern", "contemporary"), "modern"),
    (("vintage", "antique"), "vintage"),
    (("minimal",), "minimalist"),
    (("art deco", "art_deco"), "art_deco"),
    (("bold", "statement"), "bold"),
]


# ===== Normalization =====

def normalize_jewelry_type(value: Optional[str]) -> str:
    text = (value or "").lower()
    for pattern, canonical in _JEWELRY_TYPES:
        if pattern.search(text):
            return canonical
    return "unknown"


def normalize_metal(value: Optional[str]) -> str:
    text = (value or "").lower()
    if "platinum" in text:
        return "platinum"
    if "white gold" in text:
        return "white_gold"
    if "rose gold" in text or "pink gold" in text:
        return "rose_gold"
    if "yellow gold" in text or "gold" in text:
        return "yellow_gold"
    if "silver" in text:
        return "silver"
    return "unknown"


def normalize_style(value: Optional[str]) -> str:
    text = (value or "").lower()
    for keywords, canonical in _STYLE_KEYWORDS:
        if any(k in text for k in keywords):
            return canonical
    return "other"


def extract_stones(has_stones: bool, description: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    if not has_stones:
        return None
    text = (description or "").lower()
    found = [k for k in _STONE_KEYWORDS if k in text] or ["gemstone"]
    return [
        {"stoneType": stone, "description": description, "position": "detected", "estimatedCount": 1}
        for stone in found
    ]


def category_for_id(category_id: Optional[str]) -> SuggestionCategory:
    return CATEGORY_IDS.get((category_id or "").strip().lower(), SuggestionCategory.CRAFTSMANSHIP)


def _conflict_group(category: SuggestionCategory, title: str, description: str) -> Optional[str]:
    if category != SuggestionCategory.MATERIAL:
        return None
    text = f"{title} {description}".lower()
    if "18k" in text or "14k" in text or "gold" in text:
        return "metal_purity"
    if "platinum" in text or "palladium" in text:
        return "metal_type"
    return None


def _suggestion_id(raw_id: str, seen: set) -> str:
    try:
        value = str(uuid.UUID(raw_id))
    except (ValueError, TypeError, AttributeError):
        value = str(uuid.uuid4())
    if value in seen:
        value = str(uuid.uuid4())
    seen.add(value)
    return value


def _truncate_title(title: str) -> str:
    if len(title) <= MAX_TITLE_LENGTH:
        return title
    return title[: MAX_TITLE_LENGTH - 3] + "..."


def map_suggestions(analysis: VisionAnalysis) -> List[Dict[str, Any]]:
    """Flatten the vision categories into stored suggestion dicts."""
    seen: set = set()
    suggestions: List[Dict[str, Any]] = []
    for group in analysis.improvement_categories:
        category = category_for_id(group.category_id)
        for raw in group.suggestions:
            title = _truncate_title(raw.title)
            suggestions.append({
                "id": _suggestion_id(raw.suggestion_id, seen),
                "category": int(category),
                "categoryId": CATEGORY_KEYS[category],
                "title": title,
                "description": raw.description,
                "benefit": raw.benefit,
                "impactLevel": raw.impact_level,
                "characterNote": raw.character_note,
                "conflictGroup": _conflict_group(category, raw.title, raw.description),
            })
    return suggestions


def confidence_for(analysis: VisionAnalysis) -> float:
    if analysis.clarification_request is not None:
        return 0.5
    if analysis.analysis_limitations:
        return 0.7
    return 0.9


# ===== Upload & analysis =====

def _extension_for(filename: Optional[str], content_type: str) -> str:
    ext = os.path.splitext(filename or "")[1]
    if ext and len(ext) <= 6:
        return ext
    return ALLOWED_CONTENT_TYPES[content_type]


def validate_upload(content_type: Optional[str], size: int) -> str:
    normalized = (content_type or "").lower()
    if normalized == "image/jpg":
        normalized = "image/jpeg"
    if normalized not in ALLOWED_CONTENT_TYPES:
        raise InvalidRequestError(
            f"Unsupported image type '{content_type}'. Allowed: {', '.join(sorted(ALLOWED_CONTENT_TYPES))}"
        )
    if size <= 0:
        raise InvalidRequestError("Uploaded image is empty")
    if size > settings.UPGRADE_MAX_UPLOAD_BYTES:
        limit_mb = settings.UPGRADE_MAX_UPLOAD_BYTES / (1024 * 1024)
        raise InvalidRequestError(f"Image exceeds the maximum size of {limit_mb:g} MB")
    return normalized


async def upload_image(
    db: AsyncSession,
    storage: S3Storage,
    data: bytes,
    filename: Optional[str],
    content_type: Optional[str],
    user_id: Optional[str],
    guest_client_id: Optional[str],
) -> UpgradeAnalysis:
    """Store the photo and open a Pending analysis for it."""
    normalized_type = validate_upload(content_type, len(data))
    owner_user_id, guest = resolve_owner(user_id, guest_client_id)

    key = upgrade_image_key(_extension_for(filename, normalized_type))
    image_url = await asyncio.to_thread(storage.upload, data, key, normalized_type)

    analysis = UpgradeAnalysis(
        id=str(uuid.uuid4()),
        user_id=owner_user_id,
        guest_client_id=guest,
        original_image_url=image_url,
        status=int(AnalysisStatus.PENDING),
    )
    db.add(analysis)
    await db.commit()
    await db.refresh(analysis)

    logger.info(
        f"Upgrade analysis created: {analysis.id}",
        extra={"analysis_id": analysis.id, "s3_key": key, "user_id": owner_user_id, "guest_client_id": guest},
    )
    return analysis


def _analysis_values(result: VisionAnalysis) -> Dict[str, Any]:
    attrs = result.detected_attributes
    return {
        "jewelry_type": normalize_jewelry_type(attrs.jewelry_type),
        "metal_type": normalize_metal(attrs.apparent_metal),
        "style": normalize_style(attrs.style_character),
        "detected_stones": extract_stones(attrs.has_stones, attrs.stone_description),
        "confidence_score": confidence_for(result),
        "suggestions": map_suggestions(result),
        "analysis_data": {
            "pieceDescription": result.piece_description,
            "confidenceNote": result.confidence_note,
            "apparentFinish": attrs.apparent_finish,
            "analysisLimitations": result.analysis_limitations,
            "clarificationRequest": (
                result.clarification_request.model_dump() if result.clarification_request else None
            ),
            "previewGuidance": (
                {
                    "summary": result.preview_guidance.summary,
                    "keyVisualChanges": result.preview_guidance.key_visual_changes,
                }
                if result.preview_guidance
                else None
            ),
            "keepOriginal": {
                "title": result.keep_original.title,
                "description": result.keep_original.description,
                "isDefault": result.keep_original.is_default,
            },
        },
    }


async def run_vision_analysis(
    db: AsyncSession,
    analysis_id: str,
    analyzer: VisionAnalyzer,
    image_bytes: Optional[bytes] = None,
    content_type: Optional[str] = None,
) -> Optional[UpgradeAnalysis]:
    """
    Pending -> Analyzing -> Completed | Failed.

    A clarification request still completes; only transport failures and
    unusable model output fail the analysis. An analysis that stuck-analysis
    recovery failed while the vision call ran stays Failed.
    """
    analysis = await db.get(UpgradeAnalysis, analysis_id, populate_existing=True)
    if analysis is None:
        logger.error(f"Upgrade analysis not found: {analysis_id}")
        return None
    if analysis.status != AnalysisStatus.PENDING:
        logger.info(f"Upgrade analysis {analysis_id} already started, skipping", extra={"status": analysis.status})
        return analysis

    advance_analysis(analysis, AnalysisStatus.ANALYZING)
    await db.commit()

    try:
        if image_bytes:
            encoded = base64.b64encode(image_bytes).decode("ascii")
            result = await analyzer.analyze_base64(encoded, content_type or "image/jpeg")
        else:
            result = await analyzer.analyze_image_url(analysis.original_image_url)
    except Exception as e:
        logger.error(f"Vision analyzer raised for {analysis_id}: {type(e).__name__}: {e}")
        result = VisionAnalysis.failure(f"{type(e).__name__}: {e}")

    if not result.success:
        error_message = result.error_message or "Analysis failed"
        await finish_analysis(db, analysis, AnalysisStatus.FAILED, error_message=error_message)
        logger.warning(f"Upgrade analysis {analysis_id} failed: {error_message}")
        return analysis

    if not await finish_analysis(
        db, analysis, AnalysisStatus.COMPLETED, completed_at=utcnow(), **_analysis_values(result)
    ):
        logger.warning(
            f"Upgrade analysis {analysis_id} left Analyzing before it completed, result discarded",
            extra={"analysis_id": analysis_id, "status": analysis.status},
        )
        return analysis

    logger.info(
        f"Upgrade analysis {analysis_id} completed",
        extra={
            "analysis_id": analysis_id,
            "jewelry_type": analysis.jewelry_type,
            "suggestions": len(analysis.suggestions or []),
            "needs_clarification": result.clarification_request is not None,
        },
    )
    return analysis


async def recover_stuck_analyses(
    db: AsyncSession, threshold: Optional[float] = None, now: Optional[datetime] = None
) -> int:
    """
    Fail analyses left at Pending or Analyzing for longer than ``threshold``
    seconds, e.g. after the process died during the background vision call.
    """
    threshold = settings.STUCK_ANALYSIS_THRESHOLD_SECONDS if threshold is None else threshold
    cutoff = (now or utcnow()) - timedelta(seconds=threshold)
    result = await db.execute(
        update(UpgradeAnalysis)
        .where(
            UpgradeAnalysis.status.in_([int(AnalysisStatus.PENDING), int(AnalysisStatus.ANALYZING)]),
            UpgradeAnalysis.updated_at < cutoff,
        )
        .values(
            status=int(AnalysisStatus.FAILED),
            error_message=(
                f"TimeoutError: analysis did not finish within {threshold:g} seconds and was marked as failed"
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    recovered = result.rowcount or 0
    if recovered:
        logger.warning(f"Marked {recovered} stuck upgrade analysis(es) as failed", extra={"recovered": recovered})
    return recovered


async def get_analysis(db: AsyncSession, analysis_id: str, user_id: Optional[str]) -> UpgradeAnalysis:
    analysis = await db.get(UpgradeAnalysis, analysis_id)
    if analysis is None or (analysis.user_id is not None and analysis.user_id != user_id):
        raise NotFoundError("Upgrade analysis", analysis_id)
    return analysis


async def list_recent_analyses(db: AsyncSession, user_id: str, take: int = RECENT_ANALYSES_DEFAULT) -> List[UpgradeAnalysis]:
    """The user's Completed analyses, newest first; ``take`` is clamped to 1..20."""
    take = max(1, min(take, RECENT_ANALYSES_MAX))
    result = await db.execute(
        select(UpgradeAnalysis)
        .where(UpgradeAnalysis.user_id == user_id, UpgradeAnalysis.status == int(AnalysisStatus.COMPLETED))
        .order_by(UpgradeAnalysis.created_at.desc())
        .limit(take)
    )
    return list(result.scalars().all())


async def get_suggestions(db: AsyncSession, analysis_id: str, user_id: Optional[str]) -> UpgradeSuggestionsResponse:
    analysis = await get_analysis(db, analysis_id, user_id)
    if analysis.status != AnalysisStatus.COMPLETED:
        raise NotFoundError("Suggestions for analysis", analysis_id)

    suggestions = [UpgradeSuggestion(**s) for s in analysis.suggestions or []]
    groups: List[SuggestionGroup] = []
    for category in SuggestionCategory:
        members = [s for s in suggestions if s.category == category]
        if members:
            groups.append(
                SuggestionGroup(
                    category=int(category),
                    categoryId=CATEGORY_KEYS[category],
                    label=CATEGORY_LABELS[category],
                    suggestions=members,
                )
            )

    keep = (analysis.analysis_data or {}).get("keepOriginal") or {}
    return UpgradeSuggestionsResponse(
        analysisId=analysis.id,
        suggestions=suggestions,
        categories=groups,
        keepOriginal=KeepOriginalDto(
            title=keep.get("title", "Keep Original Design"),
            description=keep.get("description", "Preserve the piece exactly as designed, honoring the original vision."),
            isDefault=keep.get("isDefault", True),
        ),
    )


# ===== Upgrade preview jobs =====

async def create_upgrade_preview_job(
    db: AsyncSession, request: CreateUpgradePreviewRequest, user_id: Optional[str]
) -> UpgradePreviewJob:
    analysis = await db.get(UpgradeAnalysis, request.analysisId)
    if analysis is None:
        raise NotFoundError("Upgrade analysis", request.analysisId)
    if analysis.user_id is not None and analysis.user_id != user_id:
        raise AccessDeniedError(f"Upgrade analysis {analysis.id} belongs to another user")
    if analysis.status != AnalysisStatus.COMPLETED:
        raise InvalidRequestError(f"Upgrade analysis {analysis.id} is not completed yet")

    owner_user_id, guest = resolve_owner(user_id, request.guestClientId)

    known_ids = {s.get("id") for s in analysis.suggestions or []}
    unknown = [sid for sid in request.selectedSuggestionIds if sid not in known_ids]
    if unknown:
        raise InvalidRequestError(f"Unknown suggestion ids for analysis {analysis.id}: {', '.join(unknown)}")

    job = UpgradePreviewJob(
        id=str(uuid.uuid4()),
        analysis_id=analysis.id,
        user_id=owner_user_id,
        guest_client_id=guest,
        status=int(JobStatus.PENDING),
        kept_original=request.keepOriginal,
        applied_suggestion_ids=list(request.selectedSuggestionIds),
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)

    logger.info(
        f"Upgrade preview job created: {job.id}",
        extra={
            "job_id": job.id,
            "analysis_id": analysis.id,
            "kept_original": job.kept_original,
            "selected": len(job.applied_suggestion_ids),
        },
    )
    return job


async def get_upgrade_preview_job(db: AsyncSession, job_id: str, user_id: Optional[str]) -> UpgradePreviewJob:
    job = await db.get(UpgradePreviewJob, job_id)
    if job is None or (job.user_id is not None and job.user_id != user_id):
        raise NotFoundError("Upgrade preview job", job_id)
    return job


def build_prompt_for_job(analysis: UpgradeAnalysis, job: UpgradePreviewJob) -> str:
    by_id = {s.get("id"): s for s in analysis.suggestions or []}
    applied = [by_id[sid] for sid in job.applied_suggestion_ids or [] if sid in by_id]
    return build_upgrade_preview_prompt(
        jewelry_type=analysis.jewelry_type,
        metal_type=analysis.metal_type,
        style=analysis.style,
        stones=analysis.detected_stones,
        applied_suggestions=applied,
        kept_original=job.kept_original,
    )


async def process_upgrade_preview_job(
    db: AsyncSession,
    job_id: str,
    provider: ImageProvider,
    timeout: Optional[float] = None,
) -> Optional[UpgradePreviewJob]:
    timeout = settings.JOB_TIMEOUT_SECONDS if timeout is None else timeout
    job = await db.get(UpgradePreviewJob, job_id, populate_existing=True)
    if job is None:
        logger.error(f"Upgrade preview job not found: {job_id}")
        return None

    if job.status == JobStatus.PENDING:
        advance_job(job, JobStatus.PROCESSING)
        await db.commit()
    elif is_terminal(job.status):
        logger.info(f"Upgrade preview job {job_id} already terminal, skipping", extra={"status": job.status})
        return job

    logger.info(f"Processing upgrade preview job {job_id}", extra={"job_id": job_id, "analysis_id": job.analysis_id})

    try:
        analysis = await db.get(UpgradeAnalysis, job.analysis_id)
        if analysis is None:
            raise NotFoundError("Upgrade analysis", job.analysis_id)

        prompt = build_prompt_for_job(analysis, job)
        job.prompt = prompt
        await db.commit()

        try:
            url = await asyncio.wait_for(
                provider.generate_to_key(prompt, upgrade_preview_key(job.analysis_id, job.id)),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ImageGenerationError(f"AI image generation timed out after {timeout:g} seconds")

        if await finish_job(db, job, JobStatus.COMPLETED, enhanced_image_url=url, error_message=None):
            logger.info(f"Upgrade preview job {job_id} completed", extra={"job_id": job_id})
        else:
            logger.warning(
                f"Upgrade preview job {job_id} left Processing before it completed, result discarded",
                extra={"job_id": job_id, "status": job.status},
            )
    except Exception as e:
        logger.error(
            f"Upgrade preview job {job_id} failed: {type(e).__name__}: {e}",
            extra={"job_id": job_id, "exc_type": type(e).__name__},
        )
        await db.rollback()
        await db.refresh(job)
        await finish_job(
            db, job, JobStatus.FAILED, enhanced_image_url=None, error_message=f"{type(e).__name__}: {e}"
        )

    return job


# ===== Responses =====

def analysis_to_response(analysis: UpgradeAnalysis) -> UpgradeAnalysisResponse:
    data = analysis.analysis_data or {}
    return UpgradeAnalysisResponse(
        id=analysis.id,
        status=analysis.status,
        originalImageUrl=analysis.original_image_url,
        jewelryType=analysis.jewelry_type,
        metalType=analysis.metal_type,
        detectedStones=analysis.detected_stones,
        style=analysis.style,
        confidenceScore=analysis.confidence_score if analysis.status == AnalysisStatus.COMPLETED else None,
        pieceDescription=data.get("pieceDescription"),
        confidenceNote=data.get("confidenceNote"),
        apparentFinish=data.get("apparentFinish"),
        analysisLimitations=data.get("analysisLimitations"),
        clarificationRequest=data.get("clarificationRequest"),
        previewGuidance=data.get("previewGuidance"),
        suggestionCount=len(analysis.suggestions or []),
        errorMessage=public_error_message(analysis.error_message, GENERIC_ANALYSIS_FAILURE_MESSAGE),
        createdAt=analysis.created_at,
        completedAt=analysis.completed_at,
    )


def upgrade_job_to_response(job: UpgradePreviewJob, analysis: Optional[UpgradeAnalysis] = None) -> UpgradePreviewJobResponse:
    return UpgradePreviewJobResponse(
        id=job.id,
        analysisId=job.analysis_id,
        status=job.status,
        keptOriginal=job.kept_original,
        appliedSuggestionIds=job.applied_suggestion_ids or [],
        prompt=job.prompt,
        enhancedImageUrl=job.enhanced_image_url,
        originalImageUrl=analysis.original_image_url if analysis else None,
        errorMessage=public_error_message(job.error_message),
        createdAt=job.created_at,
        updatedAt=job.updated_at,
    )
