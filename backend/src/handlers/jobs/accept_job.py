"""
Accept Job Handler.
POST /provider/jobs/{jobId}/accept
"""
from marketplace.auth import require_user
from marketplace.logging import log_event
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, job_view, require_path_param


def handler(event, context):
    """
    Claim a pending job for the calling provider.

    Several providers can race for the same job; the conditional write lets
    exactly one through. Losers get 409 and should treat the offer as gone.
    """
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        provider_id = require_user(event)

        job = get_engine().accept(job_id, provider_id)

        return format_response(200, {
            'message': 'Job accepted',
            'job': job_view(job)
        })

    except Exception as e:
        return error_response(e)
