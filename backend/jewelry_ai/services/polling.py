from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..ai.providers.base import ImageProvider
from ..config import settings
from ..db import AsyncSessionLocal
from ..logger import logger
from ..models import AiPreviewJob, JobStatus, UpgradePreviewJob, utcnow
from .ai_preview import process_ai_preview_job
from .upgrade import process_upgrade_preview_job, recover_stuck_analyses

ProcessFn = Callable[[AsyncSession, str, ImageProvider], Awaitable[object]]
SweepFn = Callable[[AsyncSession], Awaitable[int]]


class JobPoller:
    """
    One polling loop over one job table.

    Every iteration fails jobs stuck in Processing and runs the extra
    ``sweeps``, then claims up to ``batch_size`` Pending jobs with a
    conditional UPDATE so that several poller instances never process the
    same row.
    """

    def __init__(
        self,
        name: str,
        model,
        process: ProcessFn,
        provider_factory: Callable[[], ImageProvider],
        session_factory=AsyncSessionLocal,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stuck_threshold: Optional[float] = None,
        sweeps: Sequence[SweepFn] = (),
    ):
        self.name = name
        self.model = model
        self.process = process
        self.provider_factory = provider_factory
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.poll_interval = settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.stuck_threshold = settings.STUCK_JOB_THRESHOLD_SECONDS if stuck_threshold is None else stuck_threshold
        self.sweeps = list(sweeps)

    async def recover_stuck_jobs(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.stuck_threshold)
        message = (
            f"TimeoutError: job was stuck in Processing for more than "
            f"{self.stuck_threshold:g} seconds and was marked as failed"
        )
        async with self.session_factory() as db:
            result = await db.execute(
                update(self.model)
                .where(self.model.status == int(JobStatus.PROCESSING), self.model.updated_at < cutoff)
                .values(status=int(JobStatus.FAILED), error_message=message, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        recovered = result.rowcount or 0
        if recovered:
            logger.warning(f"[{self.name}] marked {recovered} stuck job(s) as failed", extra={"poller": self.name})
        return recovered

    async def pending_job_ids(self) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(self.model.id)
                .where(self.model.status == int(JobStatus.PENDING))
                .order_by(self.model.created_at)
                .limit(self.batch_size)
            )
            return [row[0] for row in result.all()]

    async def claim(self, job_id: str) -> bool:
        """Pending -> Processing, True only for the caller that changed the row."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(self.model)
                .where(self.model.id == job_id, self.model.status == int(JobStatus.PENDING))
                .values(status=int(JobStatus.PROCESSING), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def run_sweeps(self) -> int:
        swept = 0
        for sweep in self.sweeps:
            async with self.session_factory() as db:
                swept += await sweep(db)
        return swept

    async def run_once(self) -> int:
        await self.recover_stuck_jobs()
        await self.run_sweeps()

        job_ids = await self.pending_job_ids()
        if not job_ids:
            return 0

        logger.info(f"[{self.name}] found {len(job_ids)} pending job(s)", extra={"poller": self.name})
        provider = self.provider_factory()
        processed = 0
        for job_id in job_ids:
            if not await self.claim(job_id):
                logger.info(f"[{self.name}] job {job_id} claimed elsewhere, skipping")
                continue
            try:
                async with self.session_factory() as db:
                    await self.process(db, job_id, provider)
                processed += 1
            except Exception as e:
                # process_* records job failures itself; this only guards the loop
                logger.error(
                    f"[{self.name}] unexpected error while processing {job_id}: {type(e).__name__}: {e}",
                    extra={"poller": self.name, "job_id": job_id},
                )
        return processed

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(f"[{self.name}] poller started", extra={"poll_interval": self.poll_interval})
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"[{self.name}] polling iteration failed: {type(e).__name__}: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"[{self.name}] poller stopped")


def ai_preview_poller(provider_factory: Callable[[], ImageProvider], **kwargs) -> JobPoller:
    return JobPoller("ai-preview", AiPreviewJob, process_ai_preview_job, provider_factory, **kwargs)


def upgrade_preview_poller(provider_factory: Callable[[], ImageProvider], **kwargs) -> JobPoller:
    kwargs.setdefault("sweeps", [recover_stuck_analyses])
    return JobPoller("upgrade-preview", UpgradePreviewJob, process_upgrade_preview_job, provider_factory, **kwargs)
