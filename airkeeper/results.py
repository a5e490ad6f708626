# results.py
"""
Airkeeper – Results
===================
Job states and the per-cycle run summary.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class JobState(str, enum.Enum):
    PENDING = "pending"
    VALUE_RESOLVED = "value_resolved"
    DEVIATION_CHECKED = "deviation_checked"
    # terminal
    SKIPPED = "skipped"
    PENDING_UPDATE_DETECTED = "pending_update_detected"
    SUBMITTED = "submitted"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {
    JobState.SKIPPED,
    JobState.PENDING_UPDATE_DETECTED,
    JobState.SUBMITTED,
    JobState.FAILED,
}


@dataclass(frozen=True)
class JobResult:
    job_id: str
    chain_id: Optional[str]
    state: JobState
    reason: Optional[str] = None
    tx_hash: Optional[str] = None
    nonce: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.state.terminal:
            raise ValueError(f"job result must be terminal, got {self.state}")


@dataclass
class RunSummary:
    coordinator_id: str
    started_at: float
    finished_at: float = 0.0
    results: List[JobResult] = field(default_factory=list)

    def _count(self, state: JobState) -> int:
        return sum(1 for r in self.results if r.state is state)

    @property
    def submitted(self) -> int:
        return self._count(JobState.SUBMITTED)

    @property
    def succeeded(self) -> int:
        return self.submitted

    @property
    def skipped(self) -> int:
        return self._count(JobState.SKIPPED)

    @property
    def pending(self) -> int:
        return self._count(JobState.PENDING_UPDATE_DETECTED)

    @property
    def failed(self) -> int:
        return self._count(JobState.FAILED)

    @property
    def duration(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    def by_job(self) -> Dict[str, JobResult]:
        return {r.job_id: r for r in self.results}

    def as_dict(self) -> Dict[str, float]:
        return {
            "submitted": self.submitted,
            "skipped": self.skipped,
            "pending": self.pending,
            "failed": self.failed,
            "duration": round(self.duration, 3),
        }
