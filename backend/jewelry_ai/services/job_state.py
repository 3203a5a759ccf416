from __future__ import annotations

from typing import Any, Dict, FrozenSet

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import InvalidJobStateError
from ..models import AnalysisStatus, JobStatus, utcnow

JOB_TRANSITIONS: Dict[int, FrozenSet[int]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

ANALYSIS_TRANSITIONS: Dict[int, FrozenSet[int]] = {
    AnalysisStatus.PENDING: frozenset({AnalysisStatus.ANALYZING, AnalysisStatus.FAILED}),
    AnalysisStatus.ANALYZING: frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.FAILED}),
    AnalysisStatus.COMPLETED: frozenset(),
    AnalysisStatus.FAILED: frozenset(),
}


def is_terminal(status: int) -> bool:
    return status in (JobStatus.COMPLETED, JobStatus.FAILED)


def _check(record_id, current: int, target: int, transitions: Dict[int, FrozenSet[int]], enum_cls) -> None:
    if target not in transitions.get(current, frozenset()):
        raise InvalidJobStateError(
            str(record_id),
            enum_cls(current).name.lower(),
            " or ".join(enum_cls(s).name.lower() for s in sorted(transitions.get(current, ()))) or "none (terminal)",
        )


def _advance(record, target: int, transitions: Dict[int, FrozenSet[int]], enum_cls) -> None:
    _check(record.id, record.status, target, transitions, enum_cls)
    record.status = int(target)


def advance_job(job, target: JobStatus) -> None:
    """Move an AI preview or upgrade preview job forward; backwards moves raise."""
    _advance(job, target, JOB_TRANSITIONS, JobStatus)


def advance_analysis(analysis, target: AnalysisStatus) -> None:
    _advance(analysis, target, ANALYSIS_TRANSITIONS, AnalysisStatus)


async def _finish(
    db: AsyncSession,
    record,
    source: int,
    target: int,
    transitions: Dict[int, FrozenSet[int]],
    enum_cls,
    values: Dict[str, Any],
) -> bool:
    _check(record.id, source, target, transitions, enum_cls)
    model = type(record)
    result = await db.execute(
        update(model)
        .where(model.id == record.id, model.status == int(source))
        .values(status=int(target), updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(record)
    return result.rowcount == 1


async def finish_job(db: AsyncSession, job, target: JobStatus, **values) -> bool:
    """
    Processing -> Completed | Failed as a conditional UPDATE.

    Returns False, and writes nothing, when the row already left Processing
    (for example because stuck-job recovery failed it meanwhile). ``job`` is
    refreshed from the database either way.
    """
    return await _finish(db, job, JobStatus.PROCESSING, target, JOB_TRANSITIONS, JobStatus, values)


async def finish_analysis(db: AsyncSession, analysis, target: AnalysisStatus, **values) -> bool:
    """Analyzing -> Completed | Failed, with the same guarantees as ``finish_job``."""
    return await _finish(
        db, analysis, AnalysisStatus.ANALYZING, target, ANALYSIS_TRANSITIONS, AnalysisStatus, values
    )
