# rxflow/schemas/job.py
from typing import Any

from rxflow.schemas.common import CamelModel


class JobTriggerResponse(CamelModel):
    job_id: int
    job_type: str
    status: str


class JobRunResponse(CamelModel):
    id: int
    job_type: str
    status: str
    triggered_by: int | None = None
    summary: dict[str, Any] | None = None
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
