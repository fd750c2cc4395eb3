# rxflow/services/job_service.py
"""
Service for tracking batch job runs with Redis + database fallback.
"""

import json
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rxflow.core.redis import cache_get, cache_set
from rxflow.models.job_run import JobRun, JobStatus
from rxflow.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

# Redis key prefix for job status
REDIS_JOB_KEY_PREFIX = "job:"
# TTL for job status in Redis (24 hours)
REDIS_JOB_TTL = 86400


def _get_redis_job_key(job_id: int) -> str:
    return f"{REDIS_JOB_KEY_PREFIX}{job_id}"


def _to_dict(job: JobRun) -> dict:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "status": JobStatus(job.status).value,
        "triggered_by": job.triggered_by,
        "summary": json.loads(job.summary) if job.summary else None,
        "error": job.error,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def create_job_run(
    db: Session,
    job_type: str,
    triggered_by: Optional[int] = None,
) -> int:
    """
    Record a queued job run. Returns the job id.
    """
    job = JobRun(
        job_type=job_type,
        status=JobStatus.PENDING,
        triggered_by=triggered_by,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Job run {job.id} ({job_type}) created")
    cache_set(_get_redis_job_key(job.id), json.dumps(_to_dict(job)), ttl=REDIS_JOB_TTL)
    return job.id


def update_job_run(
    db: Session,
    job_id: int,
    status: JobStatus,
    summary: Optional[dict] = None,
    error: Optional[str] = None,
) -> None:
    """
    Update job status in the database, then mirror it to Redis.
    """
    now = utc_now()
    try:
        job = db.get(JobRun, job_id)
        if not job:
            logger.warning(f"Job run {job_id} not found; status {status.value} not recorded")
            return
        job.status = status
        if summary is not None:
            job.summary = json.dumps(summary, default=str)
        if error is not None:
            job.error = error
        if status == JobStatus.RUNNING and not job.started_at:
            job.started_at = now
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            job.completed_at = now
        db.commit()
        db.refresh(job)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update job run {job_id}: {e}")
        raise

    cache_set(_get_redis_job_key(job_id), json.dumps(_to_dict(job)), ttl=REDIS_JOB_TTL)


def get_job_run(db: Session, job_id: int) -> Optional[dict]:
    """
    Get job status. Checks Redis first, falls back to database.
    Returns None if the job is unknown.
    """
    cached_data = cache_get(_get_redis_job_key(job_id))
    if cached_data:
        return json.loads(cached_data)

    job = db.get(JobRun, job_id)
    if not job:
        return None
    return _to_dict(job)
