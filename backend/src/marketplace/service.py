"""
Wires the engine and tracker to the AWS collaborators named in config.

Built lazily and reused across invocations of a warm Lambda container.
"""
from .config import config
from .earnings import EarningsReport
from .lifecycle import JobLifecycleEngine
from .notifications import NullNotifier, SqsNotifier
from .onboarding import OnboardingTracker, get_variant
from .retry import RetryPolicy
from .settlement import DynamoSettlementLedger, SettlementRetryQueue
from .storage import DynamoStorage

_storage = None
_ledger = None
_engine = None
_tracker = None
_earnings = None


def get_storage() -> DynamoStorage:
    global _storage
    if _storage is None:
        _storage = DynamoStorage()
    return _storage


def get_ledger() -> DynamoSettlementLedger:
    global _ledger
    if _ledger is None:
        _ledger = DynamoSettlementLedger(get_storage().dynamodb)
    return _ledger


def get_tracker() -> OnboardingTracker:
    global _tracker
    if _tracker is None:
        _tracker = OnboardingTracker(get_storage(), get_variant(), RetryPolicy())
    return _tracker


def get_engine() -> JobLifecycleEngine:
    global _engine
    if _engine is None:
        notifier = SqsNotifier() if config.NOTIFICATIONS_QUEUE_URL else NullNotifier()
        settlement_queue = SettlementRetryQueue() if config.SETTLEMENT_RETRY_QUEUE_URL else None
        _engine = JobLifecycleEngine(
            get_storage(),
            notifier=notifier,
            settlement=get_ledger(),
            retry_policy=RetryPolicy(),
            settlement_queue=settlement_queue,
            eligibility=get_tracker().can_receive_offers,
        )
    return _engine


def get_earnings() -> EarningsReport:
    global _earnings
    if _earnings is None:
        _earnings = EarningsReport(get_ledger(), RetryPolicy())
    return _earnings
