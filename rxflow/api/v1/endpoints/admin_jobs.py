# rxflow/api/v1/endpoints/admin_jobs.py
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session, sessionmaker

from rxflow.background.tasks import enqueue_task
from rxflow.core.database import get_db, get_session_factory
from rxflow.core.errors import NotFoundError
from rxflow.core.request_context import RequestContext, get_request_context
from rxflow.dependencies.authz import require_roles
from rxflow.models.user import RoleName
from rxflow.schemas.job import JobRunResponse, JobTriggerResponse
from rxflow.services import batch_runner, job_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{job_type}", response_model=JobTriggerResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_job(
    job_type: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    ctx: RequestContext = Depends(get_request_context),
) -> JobTriggerResponse:
    """
    Queue a batch job to run after the response is sent. Poll
    GET /admin/jobs/{job_id} for the summary.
    """
    require_roles(ctx, RoleName.SUPER_ADMIN)
    batch_runner.ensure_known_job_type(job_type)

    job_id = job_service.create_job_run(db, job_type, triggered_by=ctx.user_id)
    enqueue_task(
        background_tasks,
        batch_runner.run_job,
        session_factory,
        job_type,
        job_id=job_id,
        triggered_by=ctx.user_id,
    )
    logger.info("Job %s (%s) queued by user %s", job_id, job_type, ctx.user_id)
    return JobTriggerResponse(job_id=job_id, job_type=job_type, status="PENDING")


@router.get("/{job_id:int}", response_model=JobRunResponse)
def get_job(
    job_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
) -> JobRunResponse:
    require_roles(ctx, RoleName.SUPER_ADMIN)
    job = job_service.get_job_run(db, job_id)
    if job is None:
        raise NotFoundError("Job not found", code="JOB_NOT_FOUND")
    return JobRunResponse.model_validate(job)
