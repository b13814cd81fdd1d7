"""Workers package for background job processing."""

from market_experiments.workers.maintenance_worker import (
    process_auto_complete_job,
    process_auto_complete_job_sync,
    process_retention_job,
    process_retention_job_sync,
    queue_auto_complete,
    queue_retention_cleanup,
)

__all__ = [
    "process_auto_complete_job",
    "process_auto_complete_job_sync",
    "process_retention_job",
    "process_retention_job_sync",
    "queue_auto_complete",
    "queue_retention_cleanup",
]
