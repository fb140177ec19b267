"""
Complete Onboarding Handler.
POST /provider/onboarding/complete

Body: {"resources": {"documents": "<uploadId>", "package": "<packageId>"}}

The app uploads documents and creates the service package itself, then
reports the resulting ids here. Each id is recorded once per step, so
re-sending after a failure or relaunch does not register anything twice.
"""
from marketplace.auth import require_user
from marketplace.errors import InvalidInput
from marketplace.logging import log_event
from marketplace.onboarding import StepAction
from marketplace.service import get_tracker
from marketplace.utils import error_response, format_response, parse_body

from handlers.onboarding.get_onboarding import onboarding_view


def reported_action(name: str, resource_id: str) -> StepAction:
    return StepAction(name=name, create=lambda provider_id: resource_id)


def handler(event, context):
    log_event(event)
    try:
        provider_id = require_user(event)
        resources = parse_body(event).get('resources') or {}
        if not isinstance(resources, dict):
            raise InvalidInput("resources must be an object of name -> id")

        actions = []
        for name, resource_id in sorted(resources.items()):
            if not resource_id:
                raise InvalidInput(f"Missing id for {name}")
            actions.append(reported_action(name, str(resource_id)))

        tracker = get_tracker()
        state = tracker.complete(provider_id, actions)

        return format_response(200, onboarding_view(state, tracker))

    except Exception as e:
        return error_response(e)
