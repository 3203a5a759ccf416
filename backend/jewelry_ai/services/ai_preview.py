from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..ai.prompts import build_preview_prompt
from ..ai.providers.base import ImageProvider
from ..ai.semantic import SemanticConfig, build_semantic_config
from ..config import settings
from ..exceptions import (
    ImageGenerationError,
    InvalidRequestError,
    NotFoundError,
    QuotaExceededError,
    public_error_message,
)
from ..logger import logger
from ..models import AiPreviewJob, JobStatus, PreviewType
from ..schemas import AiPreviewJobResponse, CreateAiPreviewRequest
from .job_state import advance_job, finish_job, is_terminal

QUOTA_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED)


def resolve_owner(user_id: Optional[str], guest_client_id: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Exactly one owner per record: the authenticated user wins, otherwise the
    caller must identify itself with a guest client id.
    """
    if user_id:
        return user_id, None
    guest = (guest_client_id or "").strip()
    if not guest:
        raise InvalidRequestError("guestClientId is required for unauthenticated requests")
    return None, guest


async def count_guest_jobs(db: AsyncSession, guest_client_id: str) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(AiPreviewJob)
        .where(
            AiPreviewJob.guest_client_id == guest_client_id,
            AiPreviewJob.user_id.is_(None),
            AiPreviewJob.status.in_([int(s) for s in QUOTA_STATUSES]),
        )
    )
    return int(result.scalar_one())


async def ensure_guest_quota(db: AsyncSession, guest_client_id: str, limit: Optional[int] = None) -> None:
    limit = settings.GUEST_FREE_PREVIEW_LIMIT if limit is None else limit
    if limit <= 0:
        return
    used = await count_guest_jobs(db, guest_client_id)
    if used >= limit:
        logger.warning(
            f"Guest {guest_client_id} reached the free preview limit",
            extra={"guest_client_id": guest_client_id, "used": used, "limit": limit},
        )
        raise QuotaExceededError(limit, guest_client_id)


async def create_ai_preview_job(db: AsyncSession, request: CreateAiPreviewRequest, user_id: Optional[str]) -> AiPreviewJob:
    """Validate, snapshot the configuration and persist a Pending job."""
    preview_type = PreviewType(request.type)
    owner_user_id, guest_client_id = resolve_owner(user_id, request.guestClientId)

    # NotFound / AccessDenied surface here, before anything is written
    config = await build_semantic_config(db, request.configurationId, owner_user_id)

    if guest_client_id is not None:
        await ensure_guest_quota(db, guest_client_id)

    frame_count = None
    if preview_type == PreviewType.PREVIEW_360:
        frame_count = request.frameCount or settings.PREVIEW_360_FRAME_COUNT

    job = AiPreviewJob(
        id=str(uuid.uuid4()),
        configuration_id=request.configurationId,
        user_id=owner_user_id,
        guest_client_id=guest_client_id,
        type=int(preview_type),
        frame_count=frame_count,
        status=int(JobStatus.PENDING),
        ai_config_json=config.to_json(),
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)

    logger.info(
        f"AI preview job created: {job.id}",
        extra={
            "job_id": job.id,
            "configuration_id": job.configuration_id,
            "preview_type": preview_type.name,
            "user_id": owner_user_id,
            "guest_client_id": guest_client_id,
        },
    )
    return job


async def get_ai_preview_job(db: AsyncSession, job_id: str, user_id: Optional[str]) -> AiPreviewJob:
    job = await db.get(AiPreviewJob, job_id)
    if job is None or (job.user_id is not None and job.user_id != user_id):
        raise NotFoundError("AI preview job", job_id)
    return job


async def _semantic_config_for(db: AsyncSession, job: AiPreviewJob) -> SemanticConfig:
    if job.ai_config_json:
        return SemanticConfig.from_json(job.ai_config_json)

    logger.warning(f"Job {job.id} has no stored semantic config, rebuilding", extra={"job_id": job.id})
    config = await build_semantic_config(db, job.configuration_id, job.user_id)
    job.ai_config_json = config.to_json()
    return config


async def _generate(job: AiPreviewJob, prompt: str, provider: ImageProvider) -> Dict[str, Any]:
    """Run the provider and return the result columns to store on completion."""
    if job.type == PreviewType.PREVIEW_360:
        frame_count = job.frame_count or settings.PREVIEW_360_FRAME_COUNT
        urls = await provider.generate_frame_set(prompt, job.configuration_id, job.id, frame_count)
        if len(urls) != frame_count:
            raise ImageGenerationError(f"Expected {frame_count} frames, provider returned {len(urls)}")
        return {"frames_json": list(urls), "single_image_url": None}
    url = await provider.generate_single(prompt, job.configuration_id, job.id)
    return {"single_image_url": url, "frames_json": None}


async def process_ai_preview_job(
    db: AsyncSession,
    job_id: str,
    provider: ImageProvider,
    prompt_format: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[AiPreviewJob]:
    """
    Drive one job to a terminal state.

    The job is normally already claimed (Processing) by the poller; a
    Pending job is claimed here. Terminal jobs are left untouched, and a
    job that is failed elsewhere while the provider runs keeps its Failed
    state.
    """
    timeout = settings.JOB_TIMEOUT_SECONDS if timeout is None else timeout
    job = await db.get(AiPreviewJob, job_id, populate_existing=True)
    if job is None:
        logger.error(f"AI preview job not found: {job_id}")
        return None

    if job.status == JobStatus.PENDING:
        advance_job(job, JobStatus.PROCESSING)
        await db.commit()
    elif is_terminal(job.status):
        logger.info(f"AI preview job {job_id} already terminal, skipping", extra={"status": job.status})
        return job

    logger.info(f"Processing AI preview job {job_id}", extra={"job_id": job_id, "preview_type": job.type})

    try:
        config = await _semantic_config_for(db, job)
        prompt = build_preview_prompt(config, prompt_format or settings.AI_PROMPT_FORMAT)
        job.prompt = prompt
        await db.commit()

        try:
            results = await asyncio.wait_for(_generate(job, prompt, provider), timeout=timeout)
        except asyncio.TimeoutError:
            raise ImageGenerationError(f"AI image generation timed out after {timeout:g} seconds")

        if await finish_job(db, job, JobStatus.COMPLETED, error_message=None, **results):
            logger.info(
                f"AI preview job {job_id} completed",
                extra={"job_id": job_id, "frames": len(job.frames_json or [])},
            )
        else:
            logger.warning(
                f"AI preview job {job_id} left Processing before it completed, result discarded",
                extra={"job_id": job_id, "status": job.status},
            )
    except Exception as e:
        logger.error(
            f"AI preview job {job_id} failed: {type(e).__name__}: {e}",
            extra={"job_id": job_id, "exc_type": type(e).__name__},
        )
        await db.rollback()
        await db.refresh(job)
        await finish_job(
            db,
            job,
            JobStatus.FAILED,
            single_image_url=None,
            frames_json=None,
            error_message=f"{type(e).__name__}: {e}",
        )

    return job


def ai_preview_job_to_response(job: AiPreviewJob) -> AiPreviewJobResponse:
    return AiPreviewJobResponse(
        id=job.id,
        configurationId=job.configuration_id,
        type=job.type,
        status=job.status,
        frameCount=job.frame_count,
        singleImageUrl=job.single_image_url,
        framesUrls=job.frames_json,
        prompt=job.prompt,
        aiConfig=job.ai_config_json,
        errorMessage=public_error_message(job.error_message),
        guestClientId=job.guest_client_id,
        createdAt=job.created_at,
        updatedAt=job.updated_at,
    )
