"""
Configuration module for Lambda handlers.
Loads all environment variables needed by the job engine.
"""
import os
from decimal import Decimal


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # DynamoDB Tables
    JOBS_TABLE = os.environ.get('JOBS_TABLE', '')
    JOB_EVENTS_TABLE = os.environ.get('JOB_EVENTS_TABLE', '')
    ONBOARDING_TABLE = os.environ.get('ONBOARDING_TABLE', '')
    SETTLEMENTS_TABLE = os.environ.get('SETTLEMENTS_TABLE', '')
    TRANSACTIONS_TABLE = os.environ.get('TRANSACTIONS_TABLE', '')

    # SQS Queues
    NOTIFICATIONS_QUEUE_URL = os.environ.get('NOTIFICATIONS_QUEUE_URL', '')
    SETTLEMENT_RETRY_QUEUE_URL = os.environ.get('SETTLEMENT_RETRY_QUEUE_URL', '')

    # Payout policy
    PLATFORM_FEE_PERCENT = Decimal(os.environ.get('PLATFORM_FEE_PERCENT', '0.20'))
    MIN_BILLABLE_HOURS = Decimal(os.environ.get('MIN_BILLABLE_HOURS', '0.5'))
    CURRENCY = os.environ.get('CURRENCY', 'USD')
    CURRENCY_EXPONENT = int(os.environ.get('CURRENCY_EXPONENT', '2'))  # cents

    # Collaborator call limits
    COLLABORATOR_TIMEOUT_SECONDS = float(os.environ.get('COLLABORATOR_TIMEOUT_SECONDS', '5'))
    RETRY_MAX_ATTEMPTS = int(os.environ.get('RETRY_MAX_ATTEMPTS', '3'))
    RETRY_BASE_DELAY_SECONDS = float(os.environ.get('RETRY_BASE_DELAY_SECONDS', '0.5'))
    RETRY_MAX_DELAY_SECONDS = float(os.environ.get('RETRY_MAX_DELAY_SECONDS', '8'))

    # Pending offers are cancelled after this many minutes without acceptance
    OFFER_TIMEOUT_MINUTES = int(os.environ.get('OFFER_TIMEOUT_MINUTES', '30'))

    # Onboarding flow used for provider signups
    ONBOARDING_VARIANT = os.environ.get('ONBOARDING_VARIANT', 'cleaner')


config = Config()
