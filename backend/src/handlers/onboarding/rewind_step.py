"""
Rewind Onboarding Handler.
POST /provider/onboarding/rewind

Body: {"step": 2}
"""
from marketplace.auth import require_user
from marketplace.logging import log_event
from marketplace.service import get_tracker
from marketplace.utils import error_response, format_response, parse_body

from handlers.onboarding.advance_step import read_step
from handlers.onboarding.get_onboarding import onboarding_view


def handler(event, context):
    """Explicit go-back from the onboarding screens. Never moves forward."""
    log_event(event)
    try:
        provider_id = require_user(event)
        step = read_step(parse_body(event))

        tracker = get_tracker()
        state = tracker.rewind(provider_id, step)

        return format_response(200, onboarding_view(state, tracker))

    except Exception as e:
        return error_response(e)
