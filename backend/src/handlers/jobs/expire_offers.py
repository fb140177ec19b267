"""
Expire Offers Handler.
Triggered by EventBridge scheduler to cancel pending jobs nobody accepted.
"""
from marketplace.config import config
from marketplace.logging import get_logger
from marketplace.service import get_engine

logger = get_logger('handlers.expire_offers')


def handler(event, context):
    """
    Cancel pending jobs older than the offer timeout (OFFER_TIMEOUT_MINUTES,
    or `maxAgeMinutes` on the scheduled event).
    """
    max_age = (event or {}).get('maxAgeMinutes', config.OFFER_TIMEOUT_MINUTES)
    logger.info(f"Running offer expiration check ({max_age} min)...")

    expired = get_engine().expire_stale_offers(int(max_age))

    return {
        'expired': len(expired),
        'jobIds': expired
    }
