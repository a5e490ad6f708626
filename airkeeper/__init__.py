"""
Airkeeper package initialization.
"""

from airkeeper.exceptions import KeeperError
from airkeeper.jobs import Job
from airkeeper.results import JobResult, JobState, RunSummary

__all__: list[str] = ["Job", "JobResult", "JobState", "KeeperError", "RunSummary"]

__version__ = "0.1.0"
