"""
Get Job Handler.
GET /jobs/{jobId}
"""
from marketplace.auth import is_provider, require_user
from marketplace.errors import Unauthorized
from marketplace.logging import log_event
from marketplace.models import JobStatus
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, job_view, require_path_param


def can_view(job, user_id: str, provider: bool) -> bool:
    if user_id in (job.requester_id, job.fulfiller_id, job.offered_to):
        return True
    # Providers browsing open offers
    return provider and job.status == JobStatus.PENDING and not job.offered_to


def handler(event, context):
    """Authoritative job row with its payout breakdown."""
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        user_id = require_user(event)

        job = get_engine().get_job(job_id)
        if not can_view(job, user_id, is_provider(event)):
            raise Unauthorized(f"Not a party to job {job_id}", jobId=job_id)

        return format_response(200, job_view(job))

    except Exception as e:
        return error_response(e)
