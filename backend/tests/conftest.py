"""
Shared fixtures: in-process storage, recording collaborators and a fixed clock.
"""
import datetime
import os
import sys
from dataclasses import replace
from decimal import Decimal

import pytest

# Add src to path so `marketplace` and `handlers` import without installing
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from marketplace.lifecycle import JobLifecycleEngine  # noqa: E402
from marketplace.mirror import LocalMirror  # noqa: E402
from marketplace.models import Job, Location, SettlementRecord  # noqa: E402
from marketplace.retry import RetryPolicy  # noqa: E402
from marketplace.storage import InMemoryStorage  # noqa: E402

NOW = datetime.datetime(2026, 3, 2, 9, 0, tzinfo=datetime.timezone.utc)


class RecordingNotifier:
    """Notifier that remembers calls, and can be told to blow up."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def notify(self, party_id, event_type, payload):
        if self.fail:
            raise RuntimeError('push service down')
        self.calls.append((party_id, event_type, payload))
        return True

    def events_for(self, party_id):
        return [event_type for pid, event_type, _ in self.calls if pid == party_id]


class InMemoryLedger:
    """Settlement ledger keyed by job id, like the DynamoDB one."""

    def __init__(self, fail_with: Exception = None):
        self.records = {}
        self.calls = 0
        self.fail_with = fail_with

    def record_settlement(self, job_id, breakdown, fulfiller_id, requester_id):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if job_id in self.records:
            return replace(self.records[job_id], duplicate=True)
        record = SettlementRecord(
            job_id=job_id,
            settlement_id=job_id,
            breakdown=breakdown,
            created_at=NOW.isoformat(),
        )
        self.records[job_id] = record
        return record

    def get_settlement(self, job_id):
        return self.records.get(job_id)


def build_job(job_id='job-1', **overrides) -> Job:
    fields = dict(
        job_id=job_id,
        requester_id='customer-1',
        scheduled_at='2026-03-02T14:00:00+00:00',
        duration_minutes=90,
        gross_price=10000,
        fee_rate=Decimal('0.20'),
        location=Location('12 Elm Street', Decimal('40.7128'), Decimal('-74.0060')),
        add_ons=['inside fridge'],
        created_at=NOW.isoformat(),
    )
    fields.update(overrides)
    return Job(**fields)


@pytest.fixture
def make_job():
    return build_job


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, timeout=2, sleep=lambda s: None)


@pytest.fixture
def mirror():
    return LocalMirror()


@pytest.fixture
def engine(storage, notifier, ledger, retry_policy, mirror):
    return JobLifecycleEngine(
        storage,
        notifier=notifier,
        settlement=ledger,
        retry_policy=retry_policy,
        mirror=mirror,
        clock=lambda: NOW,
    )
