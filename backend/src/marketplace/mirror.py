"""
Local mirror of the jobs a provider or customer is looking at.

Transitions are applied here optimistically before the authoritative write
lands, then either confirmed with the stored row or rolled back to the last
confirmed copy. The mirror is never consulted for payout or accept decisions.
"""
import copy
import datetime
import threading
from dataclasses import replace
from typing import Dict, List, Optional

from .logging import get_logger
from .models import Job, JobStatus

logger = get_logger('mirror')

WINDOWS = ('all', 'today', 'tomorrow', 'week')


def _parse_timestamp(value: str) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


class LocalMirror:
    """
    In-memory job cache with an optimistic update / confirm / rollback protocol.

    Each entry keeps two copies: the one callers see, and the last copy the
    storage collaborator confirmed.
    """

    def __init__(self, jobs: List[Job] = None):
        self._lock = threading.RLock()
        self._current: Dict[str, Job] = {}
        self._confirmed: Dict[str, Job] = {}
        if jobs:
            self.load(jobs)

    def load(self, jobs: List[Job]) -> None:
        """Replace entries with authoritative rows (e.g. after a list fetch)."""
        with self._lock:
            for job in jobs:
                self._set_confirmed(job)

    def _set_confirmed(self, job: Job) -> None:
        self._current[job.job_id] = copy.deepcopy(job)
        self._confirmed[job.job_id] = copy.deepcopy(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._current.get(job_id)
            return copy.deepcopy(job) if job else None

    def jobs(self) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(j) for j in self._current.values()]

    def remove(self, job_id: str) -> None:
        with self._lock:
            self._current.pop(job_id, None)
            self._confirmed.pop(job_id, None)

    def apply_optimistic(self, job_id: str, status: str, **fields) -> Optional[Job]:
        """
        Show a transition immediately. No-op for jobs not in the mirror.

        Returns the optimistic copy.
        """
        with self._lock:
            job = self._current.get(job_id)
            if job is None:
                return None
            updated = replace(job, status=status, **fields)
            self._current[job_id] = updated
            return copy.deepcopy(updated)

    def confirm(self, job: Job) -> None:
        """The authoritative write succeeded; its result becomes the confirmed copy."""
        with self._lock:
            self._set_confirmed(job)

    def rollback(self, job_id: str) -> Optional[Job]:
        """Restore the last confirmed copy after a failed write."""
        with self._lock:
            confirmed = self._confirmed.get(job_id)
            if confirmed is None:
                self._current.pop(job_id, None)
                return None
            self._current[job_id] = copy.deepcopy(confirmed)
            logger.debug(f"Rolled back job {job_id} to {confirmed.status}")
            return copy.deepcopy(confirmed)

    def reconcile(self, job: Optional[Job], job_id: str = None) -> None:
        """
        Correct the mirror from an authoritative read.

        A job that no longer exists upstream is dropped.
        """
        with self._lock:
            if job is None:
                if job_id:
                    self.remove(job_id)
                return
            current = self._current.get(job.job_id)
            if current is not None and current.status != job.status:
                logger.info(f"Mirror desync on job {job.job_id}: {current.status} -> {job.status}")
            self._set_confirmed(job)

    # Dashboard views

    def available(self) -> List[Job]:
        return [j for j in self.jobs() if j.status == JobStatus.PENDING]

    def active(self) -> List[Job]:
        return [j for j in self.jobs() if j.status in JobStatus.ACTIVE]

    def past(self) -> List[Job]:
        return [j for j in self.jobs() if j.status in JobStatus.TERMINAL]

    def scheduled_within(self, window: str, jobs: List[Job] = None, now: datetime.datetime = None) -> List[Job]:
        """
        Filter jobs by scheduled day: 'today', 'tomorrow', 'week' (next 7 days), or 'all'.
        Days are UTC calendar days.
        """
        if window not in WINDOWS:
            raise ValueError(f"Unknown window {window!r}, expected one of {WINDOWS}")
        jobs = self.jobs() if jobs is None else jobs
        if window == 'all':
            return jobs

        now = now or datetime.datetime.now(datetime.timezone.utc)
        today = datetime.datetime(now.year, now.month, now.day, tzinfo=datetime.timezone.utc)
        one_day = datetime.timedelta(days=1)
        bounds = {
            'today': (today, today + one_day),
            'tomorrow': (today + one_day, today + 2 * one_day),
            'week': (today, today + 7 * one_day),
        }
        start, end = bounds[window]

        selected = []
        for job in jobs:
            scheduled = _parse_timestamp(job.scheduled_at)
            if scheduled is not None and start <= scheduled < end:
                selected.append(job)
        return selected
