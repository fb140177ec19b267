"""
Settlement Retry Handler.
Triggered by SQS (SETTLEMENT_RETRY_QUEUE_URL) with settlements deferred at job completion.

Records the settlement (exactly once per job id) and flips the job's
settlementStatus from 'deferred' to 'settled'. Messages that fail are reported
back as batch item failures so SQS redelivers only those.
"""
import json

from marketplace.errors import CollaboratorUnavailable, SettlementFailed
from marketplace.logging import get_logger, log_reconciliation_context
from marketplace.models import JobStatus, PayoutBreakdown, SettlementStatus, Transition
from marketplace.service import get_ledger, get_storage

logger = get_logger('handlers.settlement_retry')


def handler(event, context):
    records = event.get('Records', [])
    logger.info(f"Processing {len(records)} deferred settlements")

    failures = []
    settled = 0
    for record in records:
        try:
            process_record(record)
            settled += 1
        except (CollaboratorUnavailable, SettlementFailed, KeyError, ValueError) as e:
            logger.error(f"Settlement retry for message {record.get('messageId')} failed: {e}")
            failures.append({'itemIdentifier': record['messageId']})

    return {
        'settled': settled,
        'batchItemFailures': failures
    }


def process_record(record: dict) -> None:
    message = json.loads(record['body'])
    job_id = message['jobId']
    breakdown = PayoutBreakdown.from_item(message['payout'])

    try:
        get_ledger().record_settlement(
            job_id, breakdown, message['fulfillerId'], message['requesterId']
        )
    except SettlementFailed as e:
        log_reconciliation_context(
            job_id, Transition.COMPLETE, JobStatus.COMPLETED, JobStatus.COMPLETED,
            reason='deferred settlement rejected', error=str(e), netPayout=breakdown.net_payout,
        )
        raise

    result = get_storage().conditional_update_status(
        job_id, JobStatus.COMPLETED, JobStatus.COMPLETED,
        {'settlementStatus': SettlementStatus.SETTLED},
    )
    if not result.applied:
        actual = result.job.status if result.job else None
        if actual == JobStatus.IN_PROGRESS:
            # Completion write has not landed yet; let SQS redeliver
            raise CollaboratorUnavailable(f"Job {job_id} is not completed yet", jobId=job_id)
        log_reconciliation_context(
            job_id, Transition.COMPLETE, JobStatus.COMPLETED, actual,
            reason='settled job could not be marked settled',
        )
        return
    logger.info(f"Deferred settlement recorded for job {job_id}")
