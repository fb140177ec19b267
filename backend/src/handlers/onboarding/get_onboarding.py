"""
Get Onboarding Handler.
GET /provider/onboarding

Starts onboarding at step 1 the first time a provider opens it.
"""
from marketplace.auth import require_user
from marketplace.logging import log_event
from marketplace.models import OnboardingStage
from marketplace.service import get_tracker
from marketplace.utils import error_response, format_response


def onboarding_view(state, tracker) -> dict:
    body = state.to_item()
    body['canReceiveOffers'] = state.stage_label == OnboardingStage.LIVE
    body['thresholds'] = {
        'serviceDefined': tracker.variant.thresholds.service_defined,
        'staging': tracker.variant.thresholds.staging_step,
        'live': tracker.variant.thresholds.live,
    }
    return body


def handler(event, context):
    log_event(event)
    try:
        provider_id = require_user(event)

        tracker = get_tracker()
        state = tracker.get(provider_id) or tracker.start(provider_id)

        return format_response(200, onboarding_view(state, tracker))

    except Exception as e:
        return error_response(e)
