"""
Tests for provider earnings over settled payouts.
"""
import datetime
from unittest.mock import MagicMock

import pytest

from conftest import NOW
from marketplace.earnings import (
    EarningsReport,
    average_minor_units,
    monthly_totals,
    period_starts,
    summarize,
)
from marketplace.errors import CollaboratorUnavailable
from marketplace.models import PayoutEntry


def payout(job_id, net, paid_at, gross=None):
    gross = gross if gross is not None else net * 5 // 4
    return PayoutEntry(f'{job_id}#payout', job_id, net, gross, gross - net, paid_at)


@pytest.fixture
def entries():
    # NOW is Monday 2026-03-02 09:00 UTC; the week began Sunday 03-01
    return [
        payout('job-1', 8000, '2026-03-02T08:00:00+00:00'),
        payout('job-2', 4000, '2026-03-01T12:00:00+00:00'),
        payout('job-3', 6000, '2026-02-15T10:00:00+00:00'),
        payout('job-4', 2000, '2025-12-20T10:00:00+00:00'),
    ]


class TestPeriods:

    def test_period_starts(self):
        starts = period_starts(NOW)

        assert starts['thisWeek'] == datetime.datetime(2026, 3, 1, tzinfo=datetime.timezone.utc)
        assert starts['thisMonth'] == datetime.datetime(2026, 3, 1, tzinfo=datetime.timezone.utc)
        assert starts['lastMonth'] == datetime.datetime(2026, 2, 1, tzinfo=datetime.timezone.utc)
        assert starts['thisYear'] == datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)

    def test_last_month_in_january_is_previous_december(self):
        starts = period_starts(datetime.datetime(2026, 1, 10, tzinfo=datetime.timezone.utc))

        assert starts['lastMonth'] == datetime.datetime(2025, 12, 1, tzinfo=datetime.timezone.utc)

    def test_average_rounds_half_to_even(self):
        assert average_minor_units(3, 2) == 2
        assert average_minor_units(5, 2) == 2
        assert average_minor_units(3001, 3) == 1000
        assert average_minor_units(0, 0) == 0


class TestSummary:

    def test_totals_by_period(self, entries):
        totals = summarize(entries, NOW)

        assert totals == {
            'totalEarnings': 20000,
            'thisWeek': 12000,
            'thisMonth': 12000,
            'lastMonth': 6000,
            'thisYear': 18000,
            'jobCount': 4,
            'averagePerJob': 5000,
        }

    def test_week_starts_on_sunday(self):
        totals = summarize([
            payout('job-5', 1500, '2026-02-28T23:30:00+00:00'),
            payout('job-6', 2500, '2026-03-01T00:30:00+00:00'),
        ], NOW)

        assert totals['thisWeek'] == 2500
        assert totals['lastMonth'] == 1500

    def test_no_payouts(self):
        assert summarize([], NOW)['totalEarnings'] == 0
        assert summarize([], NOW)['averagePerJob'] == 0

    def test_monthly_newest_first(self, entries):
        months = monthly_totals(entries)

        assert months == [
            {'period': '2026-03', 'amount': 12000, 'jobs': 2, 'avgPerJob': 6000},
            {'period': '2026-02', 'amount': 6000, 'jobs': 1, 'avgPerJob': 6000},
            {'period': '2025-12', 'amount': 2000, 'jobs': 1, 'avgPerJob': 2000},
        ]
        assert [m['period'] for m in monthly_totals(entries, limit=2)] == ['2026-03', '2026-02']


class TestEarningsReport:

    def test_report_lists_payments_newest_first(self, entries, retry_policy):
        ledger = MagicMock()
        ledger.list_payouts.return_value = list(reversed(entries))
        report = EarningsReport(ledger, retry_policy, clock=lambda: NOW).report('provider-a', history_limit=2)

        assert report['summary']['totalEarnings'] == 20000
        assert [p['jobId'] for p in report['payments']] == ['job-1', 'job-2']
        assert report['payments'][0]['amount'] == 8000
        ledger.list_payouts.assert_called_once_with('provider-a', None)

    def test_ledger_read_is_retried(self, entries, retry_policy):
        ledger = MagicMock()
        ledger.list_payouts.side_effect = [CollaboratorUnavailable('throttled'), entries]

        summary = EarningsReport(ledger, retry_policy, clock=lambda: NOW).summary('provider-a')

        assert summary['jobCount'] == 4
        assert ledger.list_payouts.call_count == 2

    def test_settled_completion_shows_up_in_earnings(self, engine, storage, ledger, make_job, retry_policy):
        storage.insert(make_job(status='in_progress', fulfiller_id='provider-a'))
        engine.complete('job-1', 'provider-a')
        record = ledger.get_settlement('job-1')
        ledger.list_payouts = lambda fulfiller_id, since=None: [PayoutEntry(
            'job-1#payout', record.job_id, record.breakdown.net_payout,
            record.breakdown.gross_price, record.breakdown.platform_fee, record.created_at,
        )]

        summary = EarningsReport(ledger, retry_policy, clock=lambda: NOW).summary('provider-a')

        assert summary['thisWeek'] == 8000
        assert summary['averagePerJob'] == 8000
