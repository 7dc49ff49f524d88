"""Celery tasks for the tutor service.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in API (enqueue):
    from tutor.tasks import answer_job
    answer_job.apply_async(args=[job.to_payload()], queue="answers")
"""

from tutor.tasks.answer_job import answer_job
from tutor.tasks.sweep_stale import sweep_stale_jobs, sweep_stale_jobs_task

__all__ = ["answer_job", "sweep_stale_jobs", "sweep_stale_jobs_task"]
