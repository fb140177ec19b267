"""
Advance Onboarding Handler.
POST /provider/onboarding/advance

Body: {"step": 3}
"""
from marketplace.auth import require_user
from marketplace.errors import InvalidInput
from marketplace.logging import log_event
from marketplace.service import get_tracker
from marketplace.utils import error_response, format_response, parse_body

from handlers.onboarding.get_onboarding import onboarding_view


def read_step(body: dict) -> int:
    step = body.get('step')
    if isinstance(step, bool):
        raise InvalidInput("step must be a whole number", step=step)
    try:
        return int(step)
    except (TypeError, ValueError):
        raise InvalidInput("step must be a whole number", step=step)


def handler(event, context):
    """Move forward. Asking for a step at or behind the current one is a no-op."""
    log_event(event)
    try:
        provider_id = require_user(event)
        step = read_step(parse_body(event))

        tracker = get_tracker()
        state = tracker.advance(provider_id, step)

        return format_response(200, onboarding_view(state, tracker))

    except Exception as e:
        return error_response(e)
