"""
Job lifecycle engine.

States: pending → accepted → on_the_way → in_progress → completed, with
declined (from pending) and cancelled (from pending, accepted, on_the_way)
as terminal exits.

Every operation follows the same guard:
1. read the job from storage
2. check the acting party may perform the operation
3. check the job's status is in the operation's allowed set
4. write the new status conditionally on the status read in step 1

Step 4 is a single compare-and-set, so there is no window between reading
and writing in which another device or provider can slip a change in. The
engine never holds a lock.
"""
import datetime
import uuid
from typing import Callable, List, Optional

from .config import config
from .errors import (
    AlreadyClaimed,
    CollaboratorUnavailable,
    InvalidInput,
    InvalidTransition,
    JobNotFound,
    SettlementFailed,
    Unauthorized,
)
from .logging import get_logger, log_reconciliation_context
from .mirror import LocalMirror
from .models import (
    EventType,
    Job,
    JobEvent,
    JobStatus,
    Party,
    PartyRole,
    PayoutBreakdown,
    SettlementStatus,
    Transition,
    UpdateResult,
)
from .notifications import GeolocationProvider, Notifier
from .payouts import payout_for_job
from .retry import RetryPolicy
from .settlement import SettlementLedger, SettlementRetryQueue
from .storage import Storage

logger = get_logger('lifecycle')

# Job dataclass field -> stored attribute, for fields a transition may set
FIELD_ATTRIBUTES = {
    'fulfiller_id': 'fulfillerId',
    'updated_at': 'updatedAt',
    'accepted_at': 'acceptedAt',
    'started_travel_at': 'startedTravelAt',
    'started_work_at': 'startedWorkAt',
    'completed_at': 'completedAt',
    'cancelled_at': 'cancelledAt',
    'cancelled_by': 'cancelledBy',
    'cancel_reason': 'cancelReason',
    'payout': 'payout',
    'settlement_status': 'settlementStatus',
}

# Transitions whose failures touch money or exclusivity
RECONCILED_TRANSITIONS = {Transition.ACCEPT, Transition.COMPLETE}

# Audit/notification event written for each status transition
TRANSITION_EVENTS = {
    Transition.ACCEPT: EventType.JOB_ACCEPTED,
    Transition.DECLINE: EventType.JOB_DECLINED,
    Transition.START_TRAVEL: EventType.JOB_ON_THE_WAY,
    Transition.BEGIN_WORK: EventType.JOB_STARTED,
    Transition.COMPLETE: EventType.JOB_COMPLETED,
    Transition.CANCEL: EventType.JOB_CANCELLED,
}


def _storage_fields(fields: dict) -> dict:
    stored = {}
    for name, value in fields.items():
        if isinstance(value, PayoutBreakdown):
            value = value.to_item()
        stored[FIELD_ATTRIBUTES[name]] = value
    return stored


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class JobLifecycleEngine:
    """
    Guarded transitions over the storage collaborator.

    Args:
        storage: system of record (conditional writes)
        notifier: best-effort notification collaborator
        settlement: payment collaborator; required for complete()
        retry_policy: bounded retries for storage and settlement calls
        mirror: optional local mirror updated optimistically
        settlement_queue: where settlements go when the ledger stays
            unavailable; without it complete() fails instead of deferring
        geolocation: optional source of the provider's position for
            travel-start notifications
        eligibility: optional check that a provider may take offers
        clock: returns the current UTC datetime
    """

    def __init__(
        self,
        storage: Storage,
        notifier: Optional[Notifier] = None,
        settlement: Optional[SettlementLedger] = None,
        retry_policy: Optional[RetryPolicy] = None,
        mirror: Optional[LocalMirror] = None,
        settlement_queue: Optional[SettlementRetryQueue] = None,
        geolocation: Optional[GeolocationProvider] = None,
        eligibility: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], datetime.datetime] = _utc_now
    ):
        self.storage = storage
        self.notifier = notifier
        self.settlement = settlement
        self.retry = retry_policy or RetryPolicy()
        self.mirror = mirror
        self.settlement_queue = settlement_queue
        self.geolocation = geolocation
        self.eligibility = eligibility
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _now(self) -> str:
        return self.clock().isoformat()

    def _load(self, job_id: str) -> Job:
        """Authoritative read. Corrects the mirror as a side effect."""
        job = self.retry.call(self.storage.get_job, job_id, description=f"get job {job_id}")
        if self.mirror is not None:
            self.mirror.reconcile(job, job_id=job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def get_job(self, job_id: str) -> Job:
        return self._load(job_id)

    def history(self, job_id: str) -> List[JobEvent]:
        """Audit trail for a job, oldest first."""
        events = self.retry.call(
            self.storage.query_job_events, job_id, description=f"history {job_id}"
        )
        return sorted(events, key=lambda e: e.created_at)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_allowed(job: Job, transition: str) -> None:
        allowed = Transition.ALLOWED_FROM[transition]
        if job.status not in allowed:
            raise InvalidTransition(job.job_id, transition, job.status, allowed)

    @staticmethod
    def _require_assigned(job: Job, fulfiller_id: str, transition: str) -> None:
        if not fulfiller_id or job.fulfiller_id != fulfiller_id:
            raise Unauthorized(
                f"Provider {fulfiller_id} is not assigned to job {job.job_id}",
                jobId=job.job_id,
                transition=transition,
            )

    @staticmethod
    def _require_cancel_rights(job: Job, party: Party) -> None:
        if party.role == PartyRole.REQUESTER and party.party_id == job.requester_id:
            return
        if party.role == PartyRole.FULFILLER and job.fulfiller_id and party.party_id == job.fulfiller_id:
            return
        if party.role == PartyRole.SYSTEM:
            return
        raise Unauthorized(
            f"{party.role} {party.party_id} may not cancel job {job.job_id}",
            jobId=job.job_id,
            transition=Transition.CANCEL,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def _optimistic(self, job: Job, transition: str, **fields) -> None:
        if self.mirror is not None:
            self.mirror.apply_optimistic(job.job_id, Transition.TARGET[transition], **fields)

    def _rollback(self, job_id: str, current: Optional[Job] = None) -> None:
        if self.mirror is None:
            return
        self.mirror.rollback(job_id)
        if current is not None:
            self.mirror.reconcile(current)

    def _transition(self, job: Job, transition: str, actor_id: str, **fields) -> Job:
        """
        Compare-and-set the job from the status we read to the transition's target.

        Raises:
            AlreadyClaimed: accept lost to another provider
            InvalidTransition: the status moved underneath us
            CollaboratorUnavailable: storage did not answer within the retry budget
        """
        target = Transition.TARGET[transition]
        fields.setdefault('updated_at', self._now())
        self._optimistic(job, transition, **fields)

        def already_applied():
            # A timed-out write may still have landed: look before retrying
            current = self.storage.get_job(job.job_id)
            if current is None or current.status != target:
                return None
            if transition == Transition.ACCEPT and current.fulfiller_id != actor_id:
                return None
            return UpdateResult(applied=True, job=current)

        try:
            result = self.retry.call(
                self.storage.conditional_update_status,
                job.job_id,
                job.status,
                target,
                _storage_fields(fields),
                description=f"{transition} job {job.job_id}",
                recheck=already_applied,
            )
        except CollaboratorUnavailable:
            self._rollback(job.job_id)
            if transition in RECONCILED_TRANSITIONS:
                log_reconciliation_context(
                    job.job_id, transition, job.status, None,
                    actorId=actor_id, reason='storage unavailable',
                )
            raise
        except Exception:
            self._rollback(job.job_id)
            raise

        if not result.applied:
            self._rollback(job.job_id, result.job)
            raise self._classify_conflict(job, transition, actor_id, result.job)

        if self.mirror is not None:
            self.mirror.confirm(result.job)
        logger.info(f"Job {job.job_id}: {job.status} -> {target} by {actor_id}")
        self._record_event(
            result.job, TRANSITION_EVENTS[transition], actor_id,
            previous_status=job.status, new_status=target,
        )
        return result.job

    def _classify_conflict(self, job: Job, transition: str, actor_id: str, current: Optional[Job]):
        if current is None:
            return JobNotFound(job.job_id)
        if transition in RECONCILED_TRANSITIONS:
            log_reconciliation_context(
                job.job_id, transition, job.status, current.status,
                actorId=actor_id, fulfillerId=current.fulfiller_id,
            )
        if transition == Transition.ACCEPT and current.fulfiller_id and current.fulfiller_id != actor_id:
            return AlreadyClaimed(job.job_id)
        return InvalidTransition(
            job.job_id, transition, current.status, Transition.ALLOWED_FROM[transition]
        )

    def _record_event(
        self,
        job: Job,
        event_type: str,
        actor_id: str,
        previous_status: str = None,
        new_status: str = None,
        details: dict = None,
        required: bool = False
    ) -> None:
        event = JobEvent(
            event_id=str(uuid.uuid4()),
            job_id=job.job_id,
            event_type=event_type,
            actor_id=actor_id,
            created_at=self._now(),
            previous_status=previous_status,
            new_status=new_status,
            details=details or {},
        )
        try:
            self.retry.call(self.storage.insert, event, description=f"audit {event_type} {job.job_id}")
        except CollaboratorUnavailable as e:
            if required:
                raise
            logger.error(f"Could not record {event_type} audit entry for job {job.job_id}: {e}")

    def _notify(self, party_id: Optional[str], event_type: str, payload: dict) -> None:
        if self.notifier is None or not party_id:
            return
        try:
            self.notifier.notify(party_id, event_type, payload)
        except Exception as e:
            logger.warning(f"Notification {event_type} to {party_id} failed (non-critical): {e}")

    def _coordinates(self, fulfiller_id: str) -> Optional[dict]:
        if self.geolocation is None:
            return None
        try:
            position = self.retry.bounded(
                self.geolocation.current_coordinates, fulfiller_id, description='geolocation'
            )
        except Exception as e:
            logger.warning(f"No position for provider {fulfiller_id}: {e}")
            return None
        if not position:
            return None
        latitude, longitude = position
        return {'latitude': latitude, 'longitude': longitude}

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def accept(self, job_id: str, fulfiller_id: str) -> Job:
        """
        Claim a pending job. Exactly one of several racing providers wins;
        the others get AlreadyClaimed.
        """
        job = self._load(job_id)

        if job.offered_to and job.offered_to != fulfiller_id:
            raise Unauthorized(f"Job {job_id} was offered to another provider", jobId=job_id)
        if self.eligibility is not None and not self.eligibility(fulfiller_id):
            raise Unauthorized(f"Provider {fulfiller_id} cannot receive job offers yet", jobId=job_id)

        if job.status == JobStatus.ACCEPTED and job.fulfiller_id == fulfiller_id:
            # Client retrying an accept that already landed
            return job
        if job.status != JobStatus.PENDING and job.fulfiller_id and job.fulfiller_id != fulfiller_id:
            raise AlreadyClaimed(job_id)
        self._require_allowed(job, Transition.ACCEPT)

        now = self._now()
        accepted = self._transition(
            job, Transition.ACCEPT, fulfiller_id,
            fulfiller_id=fulfiller_id, accepted_at=now, updated_at=now,
        )
        self._notify(accepted.requester_id, EventType.JOB_ACCEPTED, {
            'jobId': job_id,
            'fulfillerId': fulfiller_id,
        })
        return accepted

    def decline(self, job_id: str, fulfiller_id: str) -> Job:
        """
        Pass on a pending offer.

        Open-pool jobs stay pending for other providers; only an audit entry is
        written. A job booked directly with this provider becomes declined.
        """
        job = self._load(job_id)
        if job.offered_to and job.offered_to != fulfiller_id:
            raise Unauthorized(f"Job {job_id} was offered to another provider", jobId=job_id)
        self._require_allowed(job, Transition.DECLINE)

        if job.offered_to == fulfiller_id:
            declined = self._transition(job, Transition.DECLINE, fulfiller_id)
            self._notify(declined.requester_id, EventType.JOB_DECLINED, {'jobId': job_id})
            return declined

        self._record_event(job, EventType.OFFER_DECLINED, fulfiller_id, required=True)
        if self.mirror is not None:
            self.mirror.remove(job_id)
        logger.info(f"Provider {fulfiller_id} declined open offer {job_id}")
        return job

    def start_travel(self, job_id: str, fulfiller_id: str) -> Job:
        job = self._load(job_id)
        self._require_assigned(job, fulfiller_id, Transition.START_TRAVEL)
        self._require_allowed(job, Transition.START_TRAVEL)

        travelling = self._transition(
            job, Transition.START_TRAVEL, fulfiller_id, started_travel_at=self._now()
        )
        payload = {'jobId': job_id, 'fulfillerId': fulfiller_id}
        coordinates = self._coordinates(fulfiller_id)
        if coordinates:
            payload['coordinates'] = coordinates
        self._notify(travelling.requester_id, EventType.JOB_ON_THE_WAY, payload)
        return travelling

    def report_delay(self, job_id: str, minutes: int, fulfiller_id: str = None) -> Job:
        """Tell the requester the provider is running late. Status is unchanged."""
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            raise InvalidInput("Delay must be a positive number of minutes", minutes=minutes)

        job = self._load(job_id)
        if fulfiller_id is not None:
            self._require_assigned(job, fulfiller_id, Transition.REPORT_DELAY)
        self._require_allowed(job, Transition.REPORT_DELAY)

        actor_id = fulfiller_id or job.fulfiller_id or 'unknown'
        self._record_event(job, EventType.JOB_DELAYED, actor_id, details={'minutes': minutes})
        self._notify(job.requester_id, EventType.JOB_DELAYED, {
            'jobId': job_id,
            'delayMinutes': minutes,
        })
        return job

    def begin_work(self, job_id: str, fulfiller_id: str) -> Job:
        job = self._load(job_id)
        self._require_assigned(job, fulfiller_id, Transition.BEGIN_WORK)
        self._require_allowed(job, Transition.BEGIN_WORK)

        working = self._transition(
            job, Transition.BEGIN_WORK, fulfiller_id, started_work_at=self._now()
        )
        self._notify(working.requester_id, EventType.JOB_STARTED, {'jobId': job_id})
        return working

    def complete(self, job_id: str, fulfiller_id: str) -> Job:
        """
        Finish a job and hand its payout to the settlement collaborator.

        The job is only marked completed once settlement has been recorded
        (or explicitly deferred to the retry queue). A rejected settlement
        leaves it in progress.
        """
        job = self._load(job_id)
        self._require_assigned(job, fulfiller_id, Transition.COMPLETE)
        self._require_allowed(job, Transition.COMPLETE)

        # Payout comes from the stored row, never from the mirror
        breakdown = payout_for_job(job)
        completed_at = self._now()
        self._optimistic(job, Transition.COMPLETE, completed_at=completed_at, payout=breakdown)
        try:
            settlement_status = self._settle(job, breakdown)
        except Exception:
            self._rollback(job_id)
            raise

        try:
            completed = self._transition(
                job, Transition.COMPLETE, fulfiller_id,
                completed_at=completed_at,
                payout=breakdown,
                settlement_status=settlement_status,
            )
        except InvalidTransition:
            # Settlement is keyed on the job id, so whoever won already holds
            # the single settlement record
            logger.warning(f"Job {job_id} settled but completion lost the race")
            raise

        payload = {
            'jobId': job_id,
            'netPayout': breakdown.net_payout,
            'platformFee': breakdown.platform_fee,
            'settlementStatus': settlement_status,
        }
        self._notify(completed.fulfiller_id, EventType.JOB_COMPLETED, payload)
        self._notify(completed.requester_id, EventType.JOB_COMPLETED, {'jobId': job_id})
        return completed

    def _settle(self, job: Job, breakdown: PayoutBreakdown) -> str:
        if self.settlement is None:
            raise CollaboratorUnavailable("No settlement collaborator configured", jobId=job.job_id)

        try:
            self.retry.call(
                self.settlement.record_settlement,
                job.job_id,
                breakdown,
                job.fulfiller_id,
                job.requester_id,
                description=f"settle job {job.job_id}",
                recheck=lambda: self.settlement.get_settlement(job.job_id),
            )
            return SettlementStatus.SETTLED
        except SettlementFailed as e:
            log_reconciliation_context(
                job.job_id, Transition.COMPLETE, JobStatus.IN_PROGRESS, job.status,
                reason='settlement rejected', error=str(e), netPayout=breakdown.net_payout,
            )
            raise
        except CollaboratorUnavailable as e:
            if self.settlement_queue is None:
                log_reconciliation_context(
                    job.job_id, Transition.COMPLETE, JobStatus.IN_PROGRESS, job.status,
                    reason='settlement unavailable', error=str(e), netPayout=breakdown.net_payout,
                )
                raise
            self.settlement_queue.defer(job.job_id, breakdown, job.fulfiller_id, job.requester_id)
            logger.warning(f"Settlement for job {job.job_id} deferred to retry queue: {e}")
            return SettlementStatus.DEFERRED

    def cancel(self, job_id: str, acting_party: Party, reason: str) -> Job:
        """
        Cancel a job that has not started. Jobs in progress or later need the
        dispute/refund process instead.
        """
        if not reason or not str(reason).strip():
            raise InvalidInput("A cancellation reason is required", jobId=job_id)

        job = self._load(job_id)
        self._require_cancel_rights(job, acting_party)
        self._require_allowed(job, Transition.CANCEL)

        cancelled = self._transition(
            job, Transition.CANCEL, acting_party.party_id,
            cancelled_at=self._now(),
            cancelled_by=acting_party.party_id,
            cancel_reason=str(reason).strip(),
        )
        payload = {'jobId': job_id, 'reason': cancelled.cancel_reason, 'cancelledBy': acting_party.role}
        if acting_party.role != PartyRole.REQUESTER:
            self._notify(cancelled.requester_id, EventType.JOB_CANCELLED, payload)
        if acting_party.role != PartyRole.FULFILLER:
            self._notify(cancelled.fulfiller_id, EventType.JOB_CANCELLED, payload)
        return cancelled

    def expire_stale_offers(self, max_age_minutes: int = None) -> List[str]:
        """
        Cancel pending jobs nobody accepted within the offer window.

        Returns the ids that were cancelled. Jobs accepted in the meantime are
        skipped.
        """
        max_age = config.OFFER_TIMEOUT_MINUTES if max_age_minutes is None else max_age_minutes
        cutoff = (self.clock() - datetime.timedelta(minutes=max_age)).isoformat()
        stale = self.retry.call(
            self.storage.list_jobs_by_status, JobStatus.PENDING, cutoff,
            description='list stale offers',
        )

        expired = []
        for job in stale:
            try:
                self.cancel(job.job_id, Party.system(), 'offer_expired')
                expired.append(job.job_id)
            except (InvalidTransition, AlreadyClaimed, JobNotFound) as e:
                logger.info(f"Skipping expiry of job {job.job_id}: {e}")
        logger.info(f"Expired {len(expired)} of {len(stale)} stale offers older than {max_age} min")
        return expired
