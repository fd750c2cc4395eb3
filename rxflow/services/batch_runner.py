# rxflow/services/batch_runner.py
"""
Per-clinic fan-out for batch jobs.

Each clinic runs in its own worker with its own session. A clinic that
raises is recorded in the summary and does not stop the others; unit-level
failures (one refill, one dead letter) are reported inside the clinic's
own result.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable

from sqlalchemy.orm import Session, sessionmaker

from rxflow.core.config import get_settings
from rxflow.core.errors import ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.models.clinic import Clinic
from rxflow.models.job_run import JobStatus, JobType
from rxflow.services import dead_letter_service, idempotency_service, job_service, refill_service

logger = logging.getLogger(__name__)

ClinicJob = Callable[[Session, int], dict]


def _process_due_refills(db: Session, clinic_id: int) -> dict:
    return refill_service.process_due_refills(db, clinic_id=clinic_id)


def _retry_dead_letters(db: Session, clinic_id: int) -> dict:
    return dead_letter_service.retry_dead_letters(db, clinic_id=clinic_id)


def _refill_queue_summary(db: Session, clinic_id: int) -> dict:
    stats = refill_service.get_refill_queue_stats(db, RequestContext.system(clinic_id), clinic_id=clinic_id)
    logger.info("Refill queue for clinic %s: %s", clinic_id, stats)
    return {"processed": stats["total"], "errors": [], "stats": stats}


CLINIC_JOBS: dict[str, ClinicJob] = {
    JobType.PROCESS_DUE_REFILLS.value: _process_due_refills,
    JobType.RETRY_DEAD_LETTERS.value: _retry_dead_letters,
    JobType.REFILL_QUEUE_SUMMARY.value: _refill_queue_summary,
}

GLOBAL_JOBS: dict[str, Callable[[Session], dict]] = {
    JobType.PURGE_IDEMPOTENCY_RECORDS.value: lambda db: {
        "processed": idempotency_service.purge_expired_records(db),
        "errors": [],
    },
}


def known_job_types() -> list[str]:
    return sorted(set(CLINIC_JOBS) | set(GLOBAL_JOBS))


def ensure_known_job_type(job_type: str) -> None:
    if job_type not in CLINIC_JOBS and job_type not in GLOBAL_JOBS:
        raise ValidationError(
            f"Unknown job type '{job_type}'",
            code="UNKNOWN_JOB_TYPE",
            detail={"known": known_job_types()},
        )


def _active_clinic_ids(session_factory: sessionmaker) -> list[int]:
    db = session_factory()
    try:
        return [row.id for row in db.query(Clinic.id).filter(Clinic.is_active.is_(True)).order_by(Clinic.id).all()]
    finally:
        db.close()


def _run_for_clinic(session_factory: sessionmaker, job: ClinicJob, clinic_id: int) -> dict:
    db = session_factory()
    try:
        return job(db, clinic_id)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_per_clinic(
    session_factory: sessionmaker,
    job: ClinicJob,
    *,
    clinic_ids: list[int] | None = None,
    max_workers: int | None = None,
) -> dict[str, Any]:
    """
    Run `job` once per clinic on a bounded pool and aggregate the results.
    """
    ids = clinic_ids if clinic_ids is not None else _active_clinic_ids(session_factory)
    workers = max(1, min(max_workers or get_settings().job_max_workers, len(ids) or 1))

    summary: dict[str, Any] = {
        "clinics_total": len(ids),
        "clinics_succeeded": 0,
        "clinics_failed": 0,
        "units_processed": 0,
        "unit_errors": 0,
        "errors": [],
        "clinics": {},
    }
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="clinic-job") as pool:
        futures = {pool.submit(_run_for_clinic, session_factory, job, cid): cid for cid in ids}
        for future in as_completed(futures):
            clinic_id = futures[future]
            try:
                result = future.result()
            except Exception as exc:
                logger.error("Job failed for clinic %s: %s", clinic_id, exc, exc_info=True)
                summary["clinics_failed"] += 1
                summary["errors"].append({"clinic_id": clinic_id, "error": str(exc)})
                continue
            summary["clinics_succeeded"] += 1
            summary["units_processed"] += result.get("processed", 0)
            summary["unit_errors"] += len(result.get("errors", []))
            summary["clinics"][str(clinic_id)] = result
    return summary


def run_job(
    session_factory: sessionmaker,
    job_type: str,
    *,
    job_id: int | None = None,
    triggered_by: int | None = None,
    clinic_ids: list[int] | None = None,
) -> dict[str, Any]:
    """
    Execute a job end to end, tracking it as a JobRun. Used by the CLI and by
    the admin trigger endpoint (as a background task).
    """
    ensure_known_job_type(job_type)

    tracking = session_factory()
    try:
        if job_id is None:
            job_id = job_service.create_job_run(tracking, job_type, triggered_by)
        job_service.update_job_run(tracking, job_id, JobStatus.RUNNING)
        logger.info("Job %s (%s) started", job_id, job_type)

        try:
            if job_type in GLOBAL_JOBS:
                db = session_factory()
                try:
                    result = GLOBAL_JOBS[job_type](db)
                finally:
                    db.close()
                summary = {
                    "clinics_total": 0,
                    "clinics_succeeded": 0,
                    "clinics_failed": 0,
                    "units_processed": result["processed"],
                    "unit_errors": len(result["errors"]),
                    "errors": result["errors"],
                    "clinics": {},
                }
            else:
                summary = run_per_clinic(session_factory, CLINIC_JOBS[job_type], clinic_ids=clinic_ids)
        except Exception as exc:
            logger.error("Job %s (%s) failed: %s", job_id, job_type, exc, exc_info=True)
            job_service.update_job_run(tracking, job_id, JobStatus.FAILED, error=str(exc))
            raise

        summary["job_id"] = job_id
        summary["job_type"] = job_type
        job_service.update_job_run(tracking, job_id, JobStatus.COMPLETED, summary=summary)
        logger.info(
            "Job %s (%s) completed: %s/%s clinics ok, %s units, %s unit errors",
            job_id,
            job_type,
            summary["clinics_succeeded"],
            summary["clinics_total"],
            summary["units_processed"],
            summary["unit_errors"],
        )
        return summary
    finally:
        tracking.close()
