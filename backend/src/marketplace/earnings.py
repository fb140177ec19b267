"""
Provider earnings, read back from the JOB_PAYOUT ledger rows written at settlement.

Only settled payouts are counted. A job whose settlement was deferred shows
up once the settlement retry queue has recorded it.
"""
import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Callable, Dict, List, Optional, Protocol

from .logging import get_logger
from .models import PayoutEntry
from .retry import RetryPolicy

logger = get_logger('earnings')

PERIODS = ('thisWeek', 'thisMonth', 'lastMonth', 'thisYear')


class PayoutHistory(Protocol):
    def list_payouts(self, fulfiller_id: str, since: Optional[str] = None) -> List[PayoutEntry]:
        ...


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _parse_timestamp(value: str) -> Optional[datetime.datetime]:
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def period_starts(now: datetime.datetime) -> Dict[str, datetime.datetime]:
    """UTC start of this week (Sunday), this month, last month and this year."""
    midnight = now.astimezone(datetime.timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    month = midnight.replace(day=1)
    return {
        'thisWeek': midnight - datetime.timedelta(days=(midnight.weekday() + 1) % 7),
        'thisMonth': month,
        'lastMonth': (month - datetime.timedelta(days=1)).replace(day=1),
        'thisYear': month.replace(month=1),
    }


def average_minor_units(total: int, count: int) -> int:
    if not count:
        return 0
    return int((Decimal(total) / count).quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


def summarize(entries: List[PayoutEntry], now: datetime.datetime) -> Dict[str, int]:
    """
    Earnings totals in minor units.

    Returns:
        dict with totalEarnings, thisWeek, thisMonth, lastMonth, thisYear,
        jobCount and averagePerJob
    """
    starts = period_starts(now)
    totals = dict.fromkeys(('totalEarnings',) + PERIODS, 0)

    for entry in entries:
        totals['totalEarnings'] += entry.net_payout
        paid_at = _parse_timestamp(entry.created_at)
        if paid_at is None:
            continue
        for period in ('thisWeek', 'thisMonth', 'thisYear'):
            if paid_at >= starts[period]:
                totals[period] += entry.net_payout
        if starts['lastMonth'] <= paid_at < starts['thisMonth']:
            totals['lastMonth'] += entry.net_payout

    totals['jobCount'] = len(entries)
    totals['averagePerJob'] = average_minor_units(totals['totalEarnings'], len(entries))
    return totals


def monthly_totals(entries: List[PayoutEntry], limit: int = 12) -> List[dict]:
    """Per-month earnings, newest month first."""
    months = {}
    for entry in entries:
        paid_at = _parse_timestamp(entry.created_at)
        if paid_at is None:
            continue
        bucket = months.setdefault(paid_at.strftime('%Y-%m'), {'amount': 0, 'jobs': 0})
        bucket['amount'] += entry.net_payout
        bucket['jobs'] += 1

    return [
        {
            'period': period,
            'amount': data['amount'],
            'jobs': data['jobs'],
            'avgPerJob': average_minor_units(data['amount'], data['jobs']),
        }
        for period, data in sorted(months.items(), reverse=True)[:limit]
    ]


class EarningsReport:
    """Earnings summary and payout history for a provider."""

    def __init__(
        self,
        ledger: PayoutHistory,
        retry_policy: RetryPolicy = None,
        clock: Callable[[], datetime.datetime] = _utc_now,
    ):
        self.ledger = ledger
        self.retry = retry_policy or RetryPolicy()
        self.clock = clock

    def payouts(self, fulfiller_id: str, since: Optional[str] = None) -> List[PayoutEntry]:
        entries = self.retry.call(
            self.ledger.list_payouts, fulfiller_id, since,
            description=f"list payouts for {fulfiller_id}",
        )
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def summary(self, fulfiller_id: str) -> Dict[str, int]:
        return summarize(self.payouts(fulfiller_id), self.clock())

    def report(self, fulfiller_id: str, history_limit: int = 50, months: int = 12) -> dict:
        entries = self.payouts(fulfiller_id)
        logger.info(f"Earnings for {fulfiller_id}: {len(entries)} settled payouts")
        return {
            'summary': summarize(entries, self.clock()),
            'monthly': monthly_totals(entries, months),
            'payments': [e.to_item() for e in entries[:history_limit]],
        }
