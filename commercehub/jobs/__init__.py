# Jobs Package - Scheduled background tasks
from .scheduler import IngestScheduler, start_scheduler, stop_scheduler, get_scheduler

__all__ = ["IngestScheduler", "start_scheduler", "stop_scheduler", "get_scheduler"]
