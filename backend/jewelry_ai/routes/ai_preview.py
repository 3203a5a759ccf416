"""
AI preview routes - submit a configuration for rendering and poll the job
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from ..auth import get_current_user_id_optional
from ..db import get_db
from ..schemas import AiPreviewJobResponse, CreateAiPreviewRequest
from ..services.ai_preview import (
    ai_preview_job_to_response,
    create_ai_preview_job,
    get_ai_preview_job,
)

router = APIRouter(tags=["AI Preview"])

@router.post("/ai/preview", response_model=AiPreviewJobResponse, status_code=202)
async def create_preview(
    request: CreateAiPreviewRequest,
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
):
    """
    Queue a preview job. The job is returned at Pending; a worker renders it later.
    """
    job = await create_ai_preview_job(db, request, user_id)
    return ai_preview_job_to_response(job)

@router.get("/ai/preview/{job_id}", response_model=AiPreviewJobResponse)
async def get_preview(
    job_id: str,
    user_id: Optional[str] = Depends(get_current_user_id_optional),
    db: AsyncSession = Depends(get_db),
):
    job = await get_ai_preview_job(db, job_id, user_id)
    return ai_preview_job_to_response(job)
