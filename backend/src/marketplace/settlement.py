"""
Payment/settlement collaborator.

Settlement is recorded exactly once per completed job: the job id is the
idempotency key, enforced with attribute_not_exists on the settlements table
inside the same transaction that writes the payout and fee ledger entries.
"""
import datetime
from typing import List, Optional, Protocol

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .config import config
from .dynamo import error_code, get_resource, is_condition_failure, query_all
from .errors import SettlementFailed
from .logging import get_logger
from .models import PayoutBreakdown, PayoutEntry, SettlementRecord, TransactionType
from .retry import transient_aws_errors
from .sqs import enqueue

logger = get_logger('settlement')


class SettlementLedger(Protocol):
    def record_settlement(
        self, job_id: str, breakdown: PayoutBreakdown, fulfiller_id: str, requester_id: str
    ) -> SettlementRecord:
        ...

    def get_settlement(self, job_id: str) -> Optional[SettlementRecord]:
        ...


def _record_from_item(item: dict, duplicate: bool = False) -> SettlementRecord:
    return SettlementRecord(
        job_id=item['jobId'],
        settlement_id=item['settlementId'],
        breakdown=PayoutBreakdown.from_item(item),
        created_at=item.get('createdAt', ''),
        duplicate=duplicate,
    )


class DynamoSettlementLedger:
    """Writes settlements and their ledger transactions in one DynamoDB transaction."""

    def __init__(self, dynamodb=None):
        self.dynamodb = dynamodb or get_resource()
        self.client = self.dynamodb.meta.client
        self.settlements_table = self.dynamodb.Table(config.SETTLEMENTS_TABLE)
        self.transactions_table = self.dynamodb.Table(config.TRANSACTIONS_TABLE)

    def get_settlement(self, job_id: str) -> Optional[SettlementRecord]:
        with transient_aws_errors(f"get settlement {job_id}"):
            response = self.settlements_table.get_item(
                Key={'settlementId': job_id}, ConsistentRead=True
            )
        item = response.get('Item')
        return _record_from_item(item, duplicate=True) if item else None

    def list_payouts(self, fulfiller_id: str, since: Optional[str] = None) -> List[PayoutEntry]:
        """Settled payouts to a provider, newest first (RecipientIndex: to, createdAt)."""
        condition = Key('to').eq(fulfiller_id)
        if since:
            condition = condition & Key('createdAt').gte(since)
        items = query_all(
            self.transactions_table,
            condition,
            index_name='RecipientIndex',
            filter_expression=Attr('type').eq(TransactionType.JOB_PAYOUT),
            scan_forward=False,
        )
        return [PayoutEntry.from_item(i) for i in items]

    def record_settlement(
        self, job_id: str, breakdown: PayoutBreakdown, fulfiller_id: str, requester_id: str
    ) -> SettlementRecord:
        """
        Record the authoritative payout for a job.

        Returns the existing record (duplicate=True) if this job was already
        settled. Raises SettlementFailed if the write is rejected, and
        CollaboratorUnavailable for timeouts and throttling.
        """
        timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()

        try:
            with transient_aws_errors(f"record settlement {job_id}"):
                self.client.transact_write_items(
                    TransactItems=[
                        # Settlement row, one per job
                        {
                            'Put': {
                                'TableName': config.SETTLEMENTS_TABLE,
                                'Item': {
                                    'settlementId': {'S': job_id},
                                    'jobId': {'S': job_id},
                                    'fulfillerId': {'S': fulfiller_id},
                                    'requesterId': {'S': requester_id},
                                    'grossPrice': {'N': str(breakdown.gross_price)},
                                    'hours': {'N': str(breakdown.hours)},
                                    'hourlyRate': {'N': str(breakdown.hourly_rate)},
                                    'platformFee': {'N': str(breakdown.platform_fee)},
                                    'netPayout': {'N': str(breakdown.net_payout)},
                                    'feeRate': {'N': str(breakdown.fee_rate)},
                                    'createdAt': {'S': timestamp}
                                },
                                'ConditionExpression': 'attribute_not_exists(settlementId)'
                            }
                        },
                        # Provider payout transaction
                        {
                            'Put': {
                                'TableName': config.TRANSACTIONS_TABLE,
                                'Item': {
                                    'transactionId': {'S': f'{job_id}#payout'},
                                    'type': {'S': TransactionType.JOB_PAYOUT},
                                    'amount': {'N': str(breakdown.net_payout)},
                                    'grossAmount': {'N': str(breakdown.gross_price)},
                                    'platformFee': {'N': str(breakdown.platform_fee)},
                                    'from': {'S': requester_id},
                                    'to': {'S': fulfiller_id},
                                    'jobId': {'S': job_id},
                                    'createdAt': {'S': timestamp}
                                }
                            }
                        },
                        # Platform fee transaction
                        {
                            'Put': {
                                'TableName': config.TRANSACTIONS_TABLE,
                                'Item': {
                                    'transactionId': {'S': f'{job_id}#fee'},
                                    'type': {'S': TransactionType.PLATFORM_FEE},
                                    'amount': {'N': str(breakdown.platform_fee)},
                                    'from': {'S': requester_id},
                                    'to': {'S': 'PLATFORM'},
                                    'jobId': {'S': job_id},
                                    'createdAt': {'S': timestamp}
                                }
                            }
                        }
                    ]
                )
        except ClientError as e:
            if is_condition_failure(e):
                logger.info(f"Settlement for job {job_id} already recorded")
                existing = self.get_settlement(job_id)
                if existing is not None:
                    return existing
            raise SettlementFailed(
                f"Settlement rejected for job {job_id}: {error_code(e)}",
                jobId=job_id,
                code=error_code(e),
            ) from e

        logger.info(
            f"Settled job {job_id}: net {breakdown.net_payout} to {fulfiller_id}, "
            f"fee {breakdown.platform_fee}"
        )
        return SettlementRecord(
            job_id=job_id,
            settlement_id=job_id,
            breakdown=breakdown,
            created_at=timestamp,
        )


class SettlementRetryQueue:
    """Deferred settlements, drained by handlers.payments.process_settlement_retry."""

    def __init__(self, queue_url: str = None):
        self.queue_url = queue_url if queue_url is not None else config.SETTLEMENT_RETRY_QUEUE_URL

    def defer(self, job_id: str, breakdown: PayoutBreakdown, fulfiller_id: str, requester_id: str) -> None:
        enqueue(
            self.queue_url,
            {
                'jobId': job_id,
                'fulfillerId': fulfiller_id,
                'requesterId': requester_id,
                'payout': breakdown.to_item(),
            },
            group_id=job_id if self.queue_url.endswith('.fifo') else None,
        )
