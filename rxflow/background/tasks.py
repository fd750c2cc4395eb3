# rxflow/background/tasks.py
from typing import Any, Callable

from fastapi import BackgroundTasks


def enqueue_task(
    background_tasks: BackgroundTasks,
    func: Callable[..., Any],
    *args: Any,
    **kwargs: Any,
) -> None:
    """
    Helper to add a background task in a consistent way.

    Usage in endpoints:
        from fastapi import BackgroundTasks
        from rxflow.background.tasks import enqueue_task
        from rxflow.services.batch_runner import run_job

        @router.post("/{job_type}")
        def handler(..., background_tasks: BackgroundTasks):
            enqueue_task(background_tasks, run_job, session_factory, job_type, job_id=job_id)
    """
    background_tasks.add_task(func, *args, **kwargs)
