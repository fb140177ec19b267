"""
SQS utility functions for message operations.
"""
import boto3
import json
from typing import Dict, Any
from .config import config
from .logging import logger
from .retry import boto_config, transient_aws_errors

sqs = boto3.client('sqs', region_name=config.AWS_REGION, config=boto_config())


def send_message(queue_url: str, message_body: Dict[str, Any], group_id: str = None) -> bool:
    """
    Send a single message to SQS queue, best-effort.

    Args:
        queue_url: SQS queue URL
        message_body: Message body as dict (will be JSON serialized)
        group_id: Message group for FIFO queues

    Returns:
        True if sent successfully, False otherwise
    """
    params = {
        'QueueUrl': queue_url,
        'MessageBody': json.dumps(message_body, default=str),
    }
    if group_id:
        params['MessageGroupId'] = group_id
    try:
        sqs.send_message(**params)
        logger.info(f"Message sent to {queue_url}")
        return True
    except Exception as e:
        logger.error(f"Error sending message to SQS: {e}")
        return False


def enqueue(queue_url: str, message_body: Dict[str, Any], group_id: str = None) -> None:
    """
    Send a message that must not be lost.

    Unlike send_message, failures raise (CollaboratorUnavailable for transient
    errors) so the caller can decide what to do with the work.
    """
    params = {
        'QueueUrl': queue_url,
        'MessageBody': json.dumps(message_body, default=str),
    }
    if group_id:
        params['MessageGroupId'] = group_id
    with transient_aws_errors(f"enqueue to {queue_url}"):
        sqs.send_message(**params)
    logger.info(f"Message enqueued to {queue_url}")
