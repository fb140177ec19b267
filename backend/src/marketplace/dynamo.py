"""
DynamoDB utility functions shared by the storage and settlement collaborators.
"""
import boto3
from typing import List, Dict, Any, Optional
from botocore.exceptions import ClientError
from .config import config
from .retry import boto_config, transient_aws_errors

CONDITION_FAILED = 'ConditionalCheckFailedException'
TRANSACTION_CANCELLED = 'TransactionCanceledException'


def get_resource():
    """DynamoDB resource with the bounded per-call timeout."""
    return boto3.resource('dynamodb', region_name=config.AWS_REGION, config=boto_config())


def error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def is_condition_failure(error: ClientError) -> bool:
    """True for a failed ConditionExpression on a single write or inside a transaction."""
    code = error_code(error)
    if code == CONDITION_FAILED:
        return True
    if code == TRANSACTION_CANCELLED:
        reasons = error.response.get('CancellationReasons', [])
        return any(r.get('Code') == 'ConditionalCheckFailed' for r in reasons)
    return False


def update_expression(fields: Dict[str, Any], prefix: str = 'f') -> tuple:
    """
    Build a SET expression with placeholder names and values.

    Returns:
        (expression, names, values) ready for update_item
    """
    clauses = []
    names = {}
    values = {}
    for idx, (attr, value) in enumerate(fields.items()):
        names[f'#{prefix}{idx}'] = attr
        values[f':{prefix}{idx}'] = value
        clauses.append(f'#{prefix}{idx} = :{prefix}{idx}')
    return ', '.join(clauses), names, values


def query_all(
    table,
    key_condition: Any,
    index_name: Optional[str] = None,
    filter_expression: Optional[Any] = None,
    scan_forward: bool = True
) -> List[Dict[str, Any]]:
    """
    Query a table or index, following LastEvaluatedKey until exhausted.

    Errors propagate: callers rely on these reads as the system of record.
    """
    params = {
        'KeyConditionExpression': key_condition,
        'ScanIndexForward': scan_forward,
    }
    if index_name:
        params['IndexName'] = index_name
    if filter_expression is not None:
        params['FilterExpression'] = filter_expression

    items = []
    with transient_aws_errors(f"query {table.name}"):
        while True:
            response = table.query(**params)
            items.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                break
            params['ExclusiveStartKey'] = last_key
    return items
