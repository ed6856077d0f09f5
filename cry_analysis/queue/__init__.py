"""Durable job queue: persistence, leasing, scheduling, and polling."""

from cry_analysis.queue.models import Job, JobKind, JobState, JobStats
from cry_analysis.queue.scheduler import JobScheduler
from cry_analysis.queue.store import InMemoryJobStore, JobStore

__all__ = [
    "InMemoryJobStore",
    "Job",
    "JobKind",
    "JobScheduler",
    "JobState",
    "JobStats",
    "JobStore",
]
