"""
Payout calculator.

Derives a provider's earnings breakdown from the job's gross price, duration
and the platform fee rate. All money is handled as integers in currency minor
units (cents) and rounded with banker's rounding (ROUND_HALF_EVEN).
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Union

from .config import config
from .errors import InvalidInput
from .models import Job, PayoutBreakdown

MINUTES_PER_HOUR = Decimal('60')
ONE_MINOR_UNIT = Decimal('1')

Number = Union[int, str, Decimal]


def _round_minor(amount: Decimal) -> int:
    return int(amount.quantize(ONE_MINOR_UNIT, rounding=ROUND_HALF_EVEN))


def require_positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        try:
            as_decimal = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidInput(f"{name} must be an integer", **{name: str(value)})
        if not as_decimal.is_finite() or as_decimal != as_decimal.to_integral_value():
            raise InvalidInput(f"{name} must be a whole number", **{name: str(value)})
        value = int(as_decimal)
    if value <= 0:
        raise InvalidInput(f"{name} must be positive", **{name: value})
    return value


def normalize_fee_rate(fee_rate: Number = None) -> Decimal:
    """
    Coerce a fee rate to a Decimal fraction in [0, 1).

    None falls back to the configured platform fee (20% by default).
    """
    if fee_rate is None:
        return config.PLATFORM_FEE_PERCENT
    try:
        rate = fee_rate if isinstance(fee_rate, Decimal) else Decimal(str(fee_rate))
    except (InvalidOperation, ValueError):
        raise InvalidInput("feeRate must be a decimal fraction", feeRate=str(fee_rate))
    if not rate.is_finite() or rate < 0 or rate >= 1:
        raise InvalidInput("feeRate must be between 0 and 1", feeRate=str(fee_rate))
    return rate


def billable_hours(duration_minutes: int) -> Decimal:
    """Duration in hours, floored at the minimum billable time (half an hour)."""
    hours = Decimal(duration_minutes) / MINUTES_PER_HOUR
    return max(hours, config.MIN_BILLABLE_HOURS)


def compute_payout(gross_price: int, duration_minutes: int, fee_rate: Number = None) -> PayoutBreakdown:
    """
    Compute the earnings breakdown for a job.

    Args:
        gross_price: Price the requester pays, in minor units
        duration_minutes: Booked duration
        fee_rate: Platform fee as a fraction (0.20 = 20%)

    Returns:
        PayoutBreakdown where net_payout + platform_fee == gross_price

    Raises:
        InvalidInput: non-positive price or duration, or fee rate outside [0, 1)
    """
    gross_price = require_positive_int(gross_price, 'grossPrice')
    duration_minutes = require_positive_int(duration_minutes, 'durationMinutes')
    rate = normalize_fee_rate(fee_rate)

    hours = billable_hours(duration_minutes)
    gross = Decimal(gross_price)
    hourly_rate = _round_minor(gross / hours)
    platform_fee = _round_minor(gross * rate)
    net_payout = gross_price - platform_fee

    return PayoutBreakdown(
        gross_price=gross_price,
        hours=hours,
        hourly_rate=hourly_rate,
        platform_fee=platform_fee,
        net_payout=net_payout,
        fee_rate=rate,
    )


def gross_from_net(net_payout: int, fee_rate: Number = None) -> int:
    """
    Price a package from the provider's desired take-home pay.

    Starts from net / (1 - fee_rate) and prefers a neighbouring price whose
    computed net payout matches the target exactly, so quoting a price and
    paying it out agree to the cent.
    """
    net_payout = require_positive_int(net_payout, 'netPayout')
    rate = normalize_fee_rate(fee_rate)

    estimate = _round_minor(Decimal(net_payout) / (1 - rate))
    for candidate in (estimate, estimate - 1, estimate + 1):
        if candidate > 0 and candidate - _round_minor(Decimal(candidate) * rate) == net_payout:
            return candidate
    return estimate


def payout_for_job(job: Job) -> PayoutBreakdown:
    return compute_payout(job.gross_price, job.duration_minutes, job.fee_rate)


def format_minor_units(amount: int, exponent: int = None) -> str:
    """6667 -> '66.67'"""
    exponent = config.CURRENCY_EXPONENT if exponent is None else exponent
    return str(Decimal(amount).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent)))


def parse_major_units(value, exponent: int = None) -> int:
    """'100.00' -> 10000. Rejects amounts with more precision than the currency has."""
    exponent = config.CURRENCY_EXPONENT if exponent is None else exponent
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidInput("Invalid amount format", amount=str(value))
    if not amount.is_finite():
        raise InvalidInput("Invalid amount format", amount=str(value))
    minor = amount.scaleb(exponent)
    if minor != minor.to_integral_value():
        raise InvalidInput("Amount has more precision than the currency allows", amount=str(value))
    return int(minor)


def breakdown_to_display(breakdown: PayoutBreakdown) -> dict:
    """Breakdown for API responses: minor-unit integers plus formatted strings."""
    return {
        **breakdown.to_item(),
        'display': {
            'grossPrice': format_minor_units(breakdown.gross_price),
            'hourlyRate': format_minor_units(breakdown.hourly_rate),
            'platformFee': format_minor_units(breakdown.platform_fee),
            'netPayout': format_minor_units(breakdown.net_payout),
        },
    }
