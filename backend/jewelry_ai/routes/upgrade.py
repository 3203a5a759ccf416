"""
Upgrade routes - photo upload, vision analysis, suggestions and re-render jobs
"""
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from ..ai.vision import VisionAnalyzer
from ..auth import get_current_user_id, get_current_user_id_optional
from ..config import settings
from ..db import AsyncSessionLocal, get_db
from ..deps import get_storage, get_vision_analyzer
from ..logger import logger
from ..models import UpgradeAnalysis
from ..schemas import (
    CreateUpgradePreviewRequest,
    UpgradeAnalysisResponse,
    UpgradePreviewJobResponse,
    UpgradeSuggestionsResponse,
    UpgradeUploadResponse,
)
from ..services.upgrade import (
    analysis_to_response,
    create_upgrade_preview_job,
    get_analysis,
    get_suggestions,
    get_upgrade_preview_job,
    list_recent_analyses,
    run_vision_analysis,
    upgrade_job_to_response,
    upload_image,
)
from ..storage import S3Storage

router = APIRouter(tags=["Upgrade"])

async def _analyze_in_background(
    analysis_id: str,
    analyzer: VisionAnalyzer,
    image_bytes: bytes,
    content_type: Optional[str],
) -> None:
    async with AsyncSessionLocal() as db:
        try:
            await run_vision_analysis(db, analysis_id, analyzer, image_bytes, content_type)
        except Exception as e:
            logger.error(f"Background analysis crashed for {analysis_id}: {type(e).__name__}: {e}")
            raise

@router.post("/upgrade/upload", response_model=UpgradeUploadResponse, status_code=202)
async def upload_for_upgrade(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    guestClientId: Optional[str] = Form(None),
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
    storage: S3Storage = Depends(get_storage),
    analyzer: VisionAnalyzer = Depends(get_vision_analyzer),
):
    """
    Store the photo and start the vision analysis. Poll /upgrade/analysis/{id} for the result.
    """
    # at most one byte past the limit; validate_upload rejects anything longer
    data = await file.read(settings.UPGRADE_MAX_UPLOAD_BYTES + 1)
    logger.info(
        "Upgrade upload received",
        extra={"uploaded_file": file.filename, "content_type": file.content_type, "size_bytes": len(data)},
    )
    analysis = await upload_image(db, storage, data, file.filename, file.content_type, user_id, guestClientId)

    background_tasks.add_task(_analyze_in_background, analysis.id, analyzer, data, file.content_type)

    return UpgradeUploadResponse(
        analysisId=analysis.id,
        imageUrl=analysis.original_image_url,
        status=analysis.status,
        message="Image uploaded. Analysis has started.",
    )

@router.get("/upgrade/analysis/{analysis_id}", response_model=UpgradeAnalysisResponse)
async def get_upgrade_analysis(
    analysis_id: str,
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
):
    analysis = await get_analysis(db, analysis_id, user_id)
    return analysis_to_response(analysis)

@router.get("/upgrade/recent", response_model=List[UpgradeAnalysisResponse])
async def get_recent_upgrade_analyses(
    take: int = Query(5),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    The caller's most recent completed analyses, newest first. ``take`` is clamped to 1..20.
    """
    analyses = await list_recent_analyses(db, user_id, take)
    return [analysis_to_response(a) for a in analyses]

@router.get("/upgrade/suggestions/{analysis_id}", response_model=UpgradeSuggestionsResponse)
async def get_upgrade_suggestions(
    analysis_id: str,
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
):
    return await get_suggestions(db, analysis_id, user_id)

@router.post("/upgrade/preview", response_model=UpgradePreviewJobResponse, status_code=202)
async def create_upgrade_preview(
    request: CreateUpgradePreviewRequest,
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
):
    job = await create_upgrade_preview_job(db, request, user_id)
    analysis = await db.get(UpgradeAnalysis, job.analysis_id)
    return upgrade_job_to_response(job, analysis)

@router.get("/upgrade/preview/{job_id}", response_model=UpgradePreviewJobResponse)
async def get_upgrade_preview(
    job_id: str,
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
):
    job = await get_upgrade_preview_job(db, job_id, user_id)
    analysis = await db.get(UpgradeAnalysis, job.analysis_id)
    return upgrade_job_to_response(job, analysis)
