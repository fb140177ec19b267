"""
Quote Payout Handler.
POST /payouts/quote

Body (one of grossPrice / netPayout):
    {"grossPrice": 10000, "durationMinutes": 90}
    {"netPayout": "80.00", "durationMinutes": 90, "feeRate": "0.20"}

Integers are minor units (cents); strings are major units ("100.00").
Pricing by netPayout works out the gross price that yields that take-home pay.
"""
from marketplace.errors import InvalidInput
from marketplace.logging import log_event
from marketplace.payouts import (
    breakdown_to_display,
    compute_payout,
    gross_from_net,
    normalize_fee_rate,
    parse_major_units,
)
from marketplace.utils import error_response, format_response, parse_body


def read_amount(body: dict, name: str):
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        return parse_major_units(value)
    return value


def handler(event, context):
    log_event(event)
    try:
        body = parse_body(event)

        fee_rate = normalize_fee_rate(body.get('feeRate'))
        gross_price = read_amount(body, 'grossPrice')
        net_payout = read_amount(body, 'netPayout')

        if (gross_price is None) == (net_payout is None):
            raise InvalidInput("Provide exactly one of grossPrice or netPayout")
        if gross_price is None:
            gross_price = gross_from_net(net_payout, fee_rate)

        breakdown = compute_payout(gross_price, body.get('durationMinutes'), fee_rate)

        return format_response(200, breakdown_to_display(breakdown))

    except Exception as e:
        return error_response(e)
