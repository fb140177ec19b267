"""
Get Earnings Handler.
GET /provider/earnings?limit=50&months=12

Totals for this week / month / last month / year, per-month earnings and the
most recent settled payouts. Amounts are minor units (cents).
"""
from marketplace.auth import require_user
from marketplace.config import config
from marketplace.logging import log_event
from marketplace.payouts import format_minor_units, require_positive_int
from marketplace.service import get_earnings
from marketplace.utils import error_response, format_response


def query_int(event: dict, name: str, default: int) -> int:
    value = (event.get('queryStringParameters') or {}).get(name)
    if value is None:
        return default
    return require_positive_int(value, name)


def handler(event, context):
    """
    Handler to get the calling provider's earnings.
    Only settled payouts count; deferred settlements appear once recorded.
    """
    log_event(event)
    try:
        provider_id = require_user(event)
        limit = query_int(event, 'limit', 50)
        months = query_int(event, 'months', 12)

        report = get_earnings().report(provider_id, history_limit=limit, months=months)
        summary = report['summary']

        return format_response(200, {
            'providerId': provider_id,
            'currency': config.CURRENCY,
            'summary': summary,
            'display': {
                'totalEarnings': format_minor_units(summary['totalEarnings']),
                'thisMonth': format_minor_units(summary['thisMonth']),
                'averagePerJob': format_minor_units(summary['averagePerJob']),
            },
            'monthly': report['monthly'],
            'payments': report['payments'],
        })

    except Exception as e:
        return error_response(e)
