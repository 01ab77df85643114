"""Background jobs module."""

from app.jobs.cleanup import TrashRetentionPolicy, run_processing_pass
from app.jobs.scheduler import BackgroundScheduler

__all__ = ["BackgroundScheduler", "TrashRetentionPolicy", "run_processing_pass"]
