from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import structlog

from .models import JobRequest
from .tracker import OperationTracker, Phase, TrackerState

logger = structlog.get_logger(__name__)

DEFAULT_MAX_FINISHED_JOBS = 1000


class JobConflictError(Exception):
    """A job id is still bound to a live tracker."""


@dataclass
class JobRecord:
    job_id: str
    state: TrackerState
    submitted_at: datetime
    updated_at: datetime


class JobStore:
    """In-memory map of job ids to their trackers. Lost on restart.

    Only the newest ``max_finished_jobs`` finished records are kept.
    """

    def __init__(self, tracker: OperationTracker, max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS) -> None:
        self.tracker = tracker
        self.max_finished_jobs = max(0, max_finished_jobs)
        self._jobs: Dict[str, JobRecord] = {}
        self._by_state: Dict[TrackerState, JobRecord] = {}
        tracker.subscribe(self._on_transition)

    def _on_transition(self, state: TrackerState, previous: Phase) -> None:
        record = self._by_state.get(state)
        if record is not None:
            record.updated_at = datetime.now(timezone.utc)

    def _forget(self, record: JobRecord) -> None:
        self._by_state.pop(record.state, None)
        if self._jobs.get(record.job_id) is record:
            del self._jobs[record.job_id]

    def _prune_finished(self) -> None:
        finished = [record for record in self._jobs.values() if not record.state.live]
        excess = len(finished) - self.max_finished_jobs
        if excess <= 0:
            return
        finished.sort(key=lambda record: record.updated_at)
        for record in finished[:excess]:
            self._forget(record)
        logger.debug("jobs.pruned", count=excess)

    def start(self, job_id: str, request: JobRequest) -> JobRecord:
        existing = self._jobs.get(job_id)
        if existing is not None and existing.state.live:
            raise JobConflictError(f"Job {job_id} is still running")
        if existing is not None:
            self._forget(existing)

        now = datetime.now(timezone.utc)
        state = self.tracker.submit(request)
        record = JobRecord(job_id=job_id, state=state, submitted_at=now, updated_at=now)
        self._jobs[job_id] = record
        self._by_state[state] = record
        self._prune_finished()
        logger.info("job.started", job_id=job_id, replaced=existing is not None)
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    def find_by_state(self, state: TrackerState) -> Optional[JobRecord]:
        return self._by_state.get(state)

    def __len__(self) -> int:
        return len(self._jobs)

    def cancel(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        if record is None:
            return None
        self.tracker.cancel(record.state)
        return record

    def cancel_all(self) -> int:
        live = [record for record in self._jobs.values() if record.state.live]
        for record in live:
            self.tracker.cancel(record.state)
        return len(live)

    async def shutdown(self) -> int:
        """Cancel every live job and wait for its tasks to unwind."""
        pending = [task for record in self._jobs.values() for task in record.state.pending_tasks()]
        cancelled = self.cancel_all()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return cancelled
