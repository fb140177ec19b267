"""
Decline Job Handler.
POST /provider/jobs/{jobId}/decline
"""
from marketplace.auth import require_user
from marketplace.logging import log_event
from marketplace.models import JobStatus
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, require_path_param


def handler(event, context):
    """Pass on a pending offer. Open-pool jobs stay available to other providers."""
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        provider_id = require_user(event)

        job = get_engine().decline(job_id, provider_id)

        return format_response(200, {
            'message': 'Offer declined',
            'jobId': job.job_id,
            'status': job.status,
            'returnedToPool': job.status == JobStatus.PENDING
        })

    except Exception as e:
        return error_response(e)
