"""
Authentication utilities for extracting user info from Cognito tokens.
"""
from typing import Optional

from .errors import Unauthorized
from .models import Party


def get_user_sub(event: dict) -> Optional[str]:
    """
    Extract user sub (unique ID) from Cognito authorizer claims.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        User sub string or None if not authenticated
    """
    try:
        return event['requestContext']['authorizer']['claims']['sub']
    except (KeyError, TypeError):
        return None


def get_user_groups(event: dict) -> list:
    """Extract user groups (customer, provider) from Cognito claims."""
    try:
        groups = event['requestContext']['authorizer']['claims'].get('cognito:groups', '')
        if isinstance(groups, str):
            return groups.split(',') if groups else []
        return groups or []
    except (KeyError, TypeError):
        return []


def is_provider(event: dict) -> bool:
    """Check if user belongs to provider group."""
    return 'provider' in get_user_groups(event)


def acting_party(event: dict, as_role: str = None) -> Optional[Party]:
    """
    The caller as a lifecycle party.

    Providers act as fulfillers unless they explicitly ask to act as the
    requester (a provider can also book jobs).
    """
    user_id = get_user_sub(event)
    if not user_id:
        return None
    if is_provider(event) and as_role != 'requester':
        return Party.fulfiller(user_id)
    return Party.requester(user_id)


def require_user(event: dict) -> str:
    """Caller's sub, or Unauthorized when the request carries no Cognito identity."""
    user_id = get_user_sub(event)
    if not user_id:
        raise Unauthorized("Not authenticated")
    return user_id
