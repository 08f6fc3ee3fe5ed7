from jobqueue.scheduler.schedule import next_fire_time, parse_interval, validate_schedule
from jobqueue.scheduler.service import RecurringJob, RecurringJobDefinition, Scheduler, SyncResult

__all__ = [
    "RecurringJob",
    "RecurringJobDefinition",
    "Scheduler",
    "SyncResult",
    "next_fire_time",
    "parse_interval",
    "validate_schedule",
]
