"""API routes for construction jobs."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from buildledger.api.dependencies import get_current_user, get_db_session, require_roles
from buildledger.models.enums import JobStatus, UserRole
from buildledger.models.schemas import JobCreate, JobRead, JobUpdate
from buildledger.models.tables import Job, User
from buildledger.services.receipt_service import load_job_statistics
from buildledger.utils.helpers import to_naive_utc

router = APIRouter(prefix="/jobs", tags=["jobs"])

_DATE_FIELDS = ("start_date", "end_date")


async def _get_job_or_404(db: AsyncSession, job_id: int, company_id: int) -> Job:
    result = await db.execute(select(Job).where(Job.id == job_id, Job.company_id == company_id))
    job = result.scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


async def _with_statistics(db: AsyncSession, job: Job) -> JobRead:
    read = JobRead.model_validate(job)
    read.statistics = await load_job_statistics(db, job)
    return read


@router.get("", response_model=List[JobRead])
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = 50,
    offset: int = 0,
    db: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> List[JobRead]:
    """List the company's jobs with expense statistics."""
    stmt = select(Job).where(Job.company_id == user.company_id)
    if status_filter:
        stmt = stmt.where(Job.status == status_filter)
    stmt = stmt.order_by(Job.created_at.desc(), Job.id.desc()).limit(limit).offset(offset)

    result = await db.execute(stmt)
    return [await _with_statistics(db, job) for job in result.scalars().all()]


@router.get("/{job_id}", response_model=JobRead)
async def get_job(
    job_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: User = Depends(get_current_user),
) -> JobRead:
    job = await _get_job_or_404(db, job_id, user.company_id)
    return await _with_statistics(db, job)


@router.post("", response_model=JobRead, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreate,
    db: AsyncSession = Depends(get_db_session),
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> JobRead:
    data = payload.model_dump(exclude_none=True)
    for field in _DATE_FIELDS:
        if field in data:
            data[field] = to_naive_utc(data[field])
    job = Job(company_id=user.company_id, **data)
    db.add(job)
    await db.commit()
    await db.refresh(job)
    return await _with_statistics(db, job)


@router.put("/{job_id}", response_model=JobRead)
async def update_job(
    job_id: int,
    payload: JobUpdate,
    db: AsyncSession = Depends(get_db_session),
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> JobRead:
    job = await _get_job_or_404(db, job_id, user.company_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field in _DATE_FIELDS:
            value = to_naive_utc(value)
        if field in ("name", "status") and value is None:
            continue
        setattr(job, field, value)
    await db.commit()
    await db.refresh(job)
    return await _with_statistics(db, job)


@router.delete("/{job_id}", status_code=204)
async def delete_job(
    job_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: User = Depends(require_roles(UserRole.ADMIN)),
):
    """Delete a job; its receipts are kept and become unassigned."""
    job = await _get_job_or_404(db, job_id, user.company_id)
    await db.delete(job)
    await db.commit()
    return None
