"""
Cancel Job Handler.
POST /jobs/{jobId}/cancel

Body: {"reason": "...", "as": "requester"}   ("as" optional, for providers who booked the job)
"""
from marketplace.auth import acting_party, require_user
from marketplace.errors import InvalidInput
from marketplace.logging import log_event
from marketplace.service import get_engine
from marketplace.utils import error_response, format_response, job_view, parse_body, require_path_param


def handler(event, context):
    """
    Cancel a job before work starts.
    Jobs already in progress return 409; they go through the dispute process.
    """
    log_event(event)
    try:
        job_id = require_path_param(event, 'jobId')
        require_user(event)
        body = parse_body(event)

        reason = (body.get('reason') or '').strip()
        if not reason:
            raise InvalidInput("reason is required")

        party = acting_party(event, as_role=body.get('as'))
        job = get_engine().cancel(job_id, party, reason)

        return format_response(200, {'message': 'Job cancelled', 'job': job_view(job)})

    except Exception as e:
        return error_response(e)
