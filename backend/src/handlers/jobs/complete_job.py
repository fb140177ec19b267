"""
Complete Job Handler.
POST /provider/jobs/{jobId}/complete

Settles the payout before the job is marked completed:
- 402 if the payment collaborator rejected the settlement (job stays in progress)
- 503 if settlement could not be reached and no retry queue is configured
"""
from marketplace.auth import require_user
from marketplace.logging import log_event
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, job_view, require_path_param


def handler(event, context):
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        provider_id = require_user(event)

        job = get_engine().complete(job_id, provider_id)

        return format_response(200, {
            'message': 'Job completed',
            'settlementStatus': job.settlement_status,
            'job': job_view(job)
        })

    except Exception as e:
        return error_response(e)
