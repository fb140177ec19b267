"""
Common utility functions for Lambda handlers.
"""
import json
from decimal import Decimal
from typing import Any, Dict

from .errors import InvalidInput, MarketplaceError
from .logging import logger
from .models import Job
from .payouts import breakdown_to_display, payout_for_job


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal types from DynamoDB."""

    def default(self, o):
        if isinstance(o, Decimal):
            # Convert to int if it's a whole number, otherwise float
            if o % 1 == 0:
                return int(o)
            return float(o)
        return super().default(o)


def format_response(
    status_code: int,
    body: Any,
    headers: Dict[str, str] = None
) -> Dict[str, Any]:
    """
    Format a standard API Gateway response with CORS headers.

    Args:
        status_code: HTTP status code
        body: Response body (will be JSON serialized)
        headers: Additional headers to include

    Returns:
        API Gateway response dict
    """
    default_headers = {
        'Access-Control-Allow-Origin': '*',
        'Access-Control-Allow-Credentials': True,
        'Content-Type': 'application/json'
    }

    if headers:
        default_headers.update(headers)

    return {
        'statusCode': status_code,
        'headers': default_headers,
        'body': json.dumps(body, cls=DecimalEncoder)
    }


def error_response(error: Exception) -> Dict[str, Any]:
    """Map an engine error to its HTTP status; anything else is a 500."""
    if isinstance(error, MarketplaceError):
        if error.http_status >= 500:
            logger.error(f"{error.__class__.__name__}: {error.message}")
        else:
            logger.info(f"{error.__class__.__name__}: {error.message}")
        return format_response(error.http_status, error.to_dict())
    logger.exception(f"Unhandled error: {error}")
    return format_response(500, {'message': 'Internal Server Error'})


def parse_body(event: dict) -> dict:
    """
    Safely parse JSON body from API Gateway event.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        Parsed body dict or empty dict if invalid
    """
    try:
        body = event.get('body') or '{}'
        if isinstance(body, str):
            return json.loads(body)
        return body or {}
    except (json.JSONDecodeError, TypeError):
        return {}


def get_path_param(event: dict, param_name: str) -> str:
    """Extract path parameter from event."""
    try:
        return event['pathParameters'][param_name]
    except (KeyError, TypeError):
        return None


def job_view(job: Job) -> Dict[str, Any]:
    """Job as returned to clients, with the payout split for display."""
    body = job.to_item()
    breakdown = job.payout or payout_for_job(job)
    body['payout'] = breakdown_to_display(breakdown)
    return body


def require_path_param(event: dict, param_name: str) -> str:
    value = get_path_param(event, param_name)
    if not value:
        raise InvalidInput(f"{param_name} is required")
    return value
