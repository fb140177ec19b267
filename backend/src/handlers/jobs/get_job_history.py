"""
Get Job History Handler.
GET /jobs/{jobId}/history
"""
from marketplace.auth import require_user
from marketplace.errors import Unauthorized
from marketplace.logging import log_event
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, require_path_param


def handler(event, context):
    """Status changes and side-channel events for a job, oldest first."""
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        user_id = require_user(event)

        engine = get_engine()
        job = engine.get_job(job_id)
        if user_id not in (job.requester_id, job.fulfiller_id):
            raise Unauthorized(f"Not a party to job {job_id}", jobId=job_id)

        events = engine.history(job_id)

        return format_response(200, {
            'jobId': job_id,
            'status': job.status,
            'events': [e.to_item() for e in events],
            'count': len(events)
        })

    except Exception as e:
        return error_response(e)
