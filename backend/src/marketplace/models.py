"""
Data models and status constants for the service marketplace.
Based on the job lifecycle: pending → accepted → on_the_way → in_progress → completed
(declined / cancelled are terminal side exits).
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional


class JobStatus:
    """Job lifecycle statuses."""
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    ON_THE_WAY = 'on_the_way'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    DECLINED = 'declined'
    CANCELLED = 'cancelled'

    TERMINAL = frozenset({COMPLETED, DECLINED, CANCELLED})
    ACTIVE = frozenset({ACCEPTED, ON_THE_WAY, IN_PROGRESS})


class Transition:
    """Named lifecycle operations and the source statuses each accepts."""
    ACCEPT = 'accept'
    DECLINE = 'decline'
    START_TRAVEL = 'start_travel'
    REPORT_DELAY = 'report_delay'
    BEGIN_WORK = 'begin_work'
    COMPLETE = 'complete'
    CANCEL = 'cancel'

    ALLOWED_FROM = {
        ACCEPT: frozenset({JobStatus.PENDING}),
        DECLINE: frozenset({JobStatus.PENDING}),
        START_TRAVEL: frozenset({JobStatus.ACCEPTED}),
        REPORT_DELAY: frozenset({JobStatus.ACCEPTED, JobStatus.ON_THE_WAY}),
        # Some flows skip the travel sub-state
        BEGIN_WORK: frozenset({JobStatus.ACCEPTED, JobStatus.ON_THE_WAY}),
        COMPLETE: frozenset({JobStatus.IN_PROGRESS}),
        CANCEL: frozenset({JobStatus.PENDING, JobStatus.ACCEPTED, JobStatus.ON_THE_WAY}),
    }

    TARGET = {
        ACCEPT: JobStatus.ACCEPTED,
        DECLINE: JobStatus.DECLINED,
        START_TRAVEL: JobStatus.ON_THE_WAY,
        BEGIN_WORK: JobStatus.IN_PROGRESS,
        COMPLETE: JobStatus.COMPLETED,
        CANCEL: JobStatus.CANCELLED,
    }


class PartyRole:
    """Who is acting on a job."""
    REQUESTER = 'requester'
    FULFILLER = 'fulfiller'
    SYSTEM = 'system'


class EventType:
    """Notification and audit event types."""
    JOB_ACCEPTED = 'job.accepted'
    JOB_DECLINED = 'job.declined'
    OFFER_DECLINED = 'job.offer_declined'
    JOB_ON_THE_WAY = 'job.on_the_way'
    JOB_DELAYED = 'job.delayed'
    JOB_STARTED = 'job.started'
    JOB_COMPLETED = 'job.completed'
    JOB_CANCELLED = 'job.cancelled'


class SettlementStatus:
    SETTLED = 'settled'
    DEFERRED = 'deferred'


class OnboardingStage:
    """Coarse capability tiers derived from onboarding progress."""
    APPLICANT = 'APPLICANT'
    SERVICE_DEFINED = 'SERVICE_DEFINED'
    STAGING = 'STAGING'
    LIVE = 'LIVE'


class TransactionType:
    """Ledger entry types written at settlement."""
    JOB_PAYOUT = 'JOB_PAYOUT'
    PLATFORM_FEE = 'PLATFORM_FEE'


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _drop_none(item: Dict[str, Any]) -> Dict[str, Any]:
    # DynamoDB rejects empty strings in key attributes and we never store nulls
    return {k: v for k, v in item.items() if v is not None}


@dataclass(frozen=True)
class Party:
    """An actor calling into the engine."""
    party_id: str
    role: str

    @classmethod
    def requester(cls, party_id: str) -> 'Party':
        return cls(party_id, PartyRole.REQUESTER)

    @classmethod
    def fulfiller(cls, party_id: str) -> 'Party':
        return cls(party_id, PartyRole.FULFILLER)

    @classmethod
    def system(cls) -> 'Party':
        return cls('system', PartyRole.SYSTEM)


@dataclass(frozen=True)
class Location:
    address: str
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None

    def to_item(self) -> Dict[str, Any]:
        return _drop_none({
            'address': self.address,
            'latitude': _to_decimal(self.latitude),
            'longitude': _to_decimal(self.longitude),
        })

    @classmethod
    def from_item(cls, item: Optional[Dict[str, Any]]) -> 'Location':
        item = item or {}
        return cls(
            address=item.get('address', ''),
            latitude=_to_decimal(item.get('latitude')),
            longitude=_to_decimal(item.get('longitude')),
        )


@dataclass(frozen=True)
class PayoutBreakdown:
    """
    Earnings split for one job. Money fields are integers in currency minor
    units (cents); `hours` is the billable duration.
    """
    gross_price: int
    hours: Decimal
    hourly_rate: int
    platform_fee: int
    net_payout: int
    fee_rate: Decimal

    def to_item(self) -> Dict[str, Any]:
        return {
            'grossPrice': self.gross_price,
            'hours': self.hours,
            'hourlyRate': self.hourly_rate,
            'platformFee': self.platform_fee,
            'netPayout': self.net_payout,
            'feeRate': self.fee_rate,
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'PayoutBreakdown':
        return cls(
            gross_price=int(item['grossPrice']),
            hours=_to_decimal(item['hours']),
            hourly_rate=int(item['hourlyRate']),
            platform_fee=int(item['platformFee']),
            net_payout=int(item['netPayout']),
            fee_rate=_to_decimal(item['feeRate']),
        )


@dataclass
class Job:
    """One scheduled service engagement between a requester and a fulfiller."""
    job_id: str
    requester_id: str
    scheduled_at: str
    duration_minutes: int
    gross_price: int
    fee_rate: Decimal
    location: Location
    status: str = JobStatus.PENDING
    fulfiller_id: Optional[str] = None
    offered_to: Optional[str] = None
    add_ons: List[str] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    accepted_at: Optional[str] = None
    started_travel_at: Optional[str] = None
    started_work_at: Optional[str] = None
    completed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    payout: Optional[PayoutBreakdown] = None
    settlement_status: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return _drop_none({
            'jobId': self.job_id,
            'status': self.status,
            'requesterId': self.requester_id,
            'fulfillerId': self.fulfiller_id,
            'offeredTo': self.offered_to,
            'scheduledAt': self.scheduled_at,
            'durationMinutes': self.duration_minutes,
            'grossPrice': self.gross_price,
            'feeRate': self.fee_rate,
            'addOns': list(self.add_ons),
            'location': self.location.to_item(),
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'acceptedAt': self.accepted_at,
            'startedTravelAt': self.started_travel_at,
            'startedWorkAt': self.started_work_at,
            'completedAt': self.completed_at,
            'cancelledAt': self.cancelled_at,
            'cancelledBy': self.cancelled_by,
            'cancelReason': self.cancel_reason,
            'payout': self.payout.to_item() if self.payout else None,
            'settlementStatus': self.settlement_status,
        })

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Job':
        payout = item.get('payout')
        return cls(
            job_id=item['jobId'],
            status=item.get('status', JobStatus.PENDING),
            requester_id=item['requesterId'],
            fulfiller_id=item.get('fulfillerId'),
            offered_to=item.get('offeredTo'),
            scheduled_at=item.get('scheduledAt'),
            duration_minutes=int(item['durationMinutes']),
            gross_price=int(item['grossPrice']),
            fee_rate=_to_decimal(item['feeRate']),
            add_ons=list(item.get('addOns') or []),
            location=Location.from_item(item.get('location')),
            created_at=item.get('createdAt'),
            updated_at=item.get('updatedAt'),
            accepted_at=item.get('acceptedAt'),
            started_travel_at=item.get('startedTravelAt'),
            started_work_at=item.get('startedWorkAt'),
            completed_at=item.get('completedAt'),
            cancelled_at=item.get('cancelledAt'),
            cancelled_by=item.get('cancelledBy'),
            cancel_reason=item.get('cancelReason'),
            payout=PayoutBreakdown.from_item(payout) if payout else None,
            settlement_status=item.get('settlementStatus'),
        )


@dataclass(frozen=True)
class JobEvent:
    """Audit log entry for a transition or side-channel action."""
    event_id: str
    job_id: str
    event_type: str
    actor_id: str
    created_at: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_item(self) -> Dict[str, Any]:
        return _drop_none({
            'eventId': self.event_id,
            'jobId': self.job_id,
            'eventType': self.event_type,
            'actorId': self.actor_id,
            'createdAt': self.created_at,
            'previousStatus': self.previous_status,
            'newStatus': self.new_status,
            'details': dict(self.details) or None,
        })

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'JobEvent':
        return cls(
            event_id=item['eventId'],
            job_id=item['jobId'],
            event_type=item['eventType'],
            actor_id=item.get('actorId', ''),
            created_at=item.get('createdAt', ''),
            previous_status=item.get('previousStatus'),
            new_status=item.get('newStatus'),
            details=dict(item.get('details') or {}),
        )


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of a conditional write: whether it applied, and the row as it now stands."""
    applied: bool
    job: Optional[Job]


@dataclass(frozen=True)
class SettlementRecord:
    job_id: str
    settlement_id: str
    breakdown: PayoutBreakdown
    created_at: str
    duplicate: bool = False


@dataclass(frozen=True)
class PayoutEntry:
    """A provider's JOB_PAYOUT ledger row, as read back for earnings."""
    transaction_id: str
    job_id: str
    net_payout: int
    gross_price: int
    platform_fee: int
    created_at: str

    def to_item(self) -> Dict[str, Any]:
        return {
            'transactionId': self.transaction_id,
            'jobId': self.job_id,
            'amount': self.net_payout,
            'grossAmount': self.gross_price,
            'platformFee': self.platform_fee,
            'createdAt': self.created_at,
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'PayoutEntry':
        return cls(
            transaction_id=item['transactionId'],
            job_id=item['jobId'],
            net_payout=int(item['amount']),
            gross_price=int(item.get('grossAmount', 0)),
            platform_fee=int(item.get('platformFee', 0)),
            created_at=item.get('createdAt', ''),
        )


# Provider verification is a tagged variant; callers match it with isinstance.

@dataclass(frozen=True)
class Unverified:
    pass


@dataclass(frozen=True)
class Verified:
    since: str


def verification_from_item(item: Optional[Dict[str, Any]]):
    """Parse the stored verification attribute once, at the storage edge."""
    if item and item.get('status') == 'verified':
        return Verified(since=item.get('since', ''))
    return Unverified()


def verification_to_item(verification) -> Dict[str, Any]:
    if isinstance(verification, Verified):
        return {'status': 'verified', 'since': verification.since}
    if isinstance(verification, Unverified):
        return {'status': 'unverified'}
    raise TypeError(f"Unknown verification variant: {verification!r}")


@dataclass
class OnboardingState:
    provider_id: str
    variant: str
    current_step: int
    total_steps: int
    is_complete: bool = False
    stage_label: Optional[str] = None  # cached copy, recomputed on read
    completed_actions: Dict[str, str] = field(default_factory=dict)
    verification: Any = field(default_factory=Unverified)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return _drop_none({
            'providerId': self.provider_id,
            'variant': self.variant,
            'currentStep': self.current_step,
            'totalSteps': self.total_steps,
            'isComplete': self.is_complete,
            'stageLabel': self.stage_label,
            'completedActions': dict(self.completed_actions),
            'verification': verification_to_item(self.verification),
            'createdAt': self.created_at,
            'updatedAt': self.updated_at,
            'completedAt': self.completed_at,
        })

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'OnboardingState':
        return cls(
            provider_id=item['providerId'],
            variant=item.get('variant', ''),
            current_step=int(item['currentStep']),
            total_steps=int(item['totalSteps']),
            is_complete=bool(item.get('isComplete', False)),
            stage_label=item.get('stageLabel'),
            completed_actions=dict(item.get('completedActions') or {}),
            verification=verification_from_item(item.get('verification')),
            created_at=item.get('createdAt'),
            updated_at=item.get('updatedAt'),
            completed_at=item.get('completedAt'),
        )

