"""
Report Delay Handler.
POST /provider/jobs/{jobId}/delay

Body: {"minutes": 15}
"""
from marketplace.auth import require_user
from marketplace.logging import log_event
from marketplace.payouts import require_positive_int
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, parse_body, require_path_param


def handler(event, context):
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        provider_id = require_user(event)
        body = parse_body(event)

        minutes = require_positive_int(body.get('minutes'), 'minutes')

        job = get_engine().report_delay(job_id, minutes, fulfiller_id=provider_id)

        return format_response(200, {
            'message': 'Customer notified of delay',
            'jobId': job.job_id,
            'status': job.status,
            'delayMinutes': minutes
        })

    except Exception as e:
        return error_response(e)
