"""
Background job execution.
"""

from .cancellation import CancellationToken, JobCancelled
from .supervisor import JobSupervisor

__all__ = [
    "CancellationToken",
    "JobCancelled",
    "JobSupervisor",
]
