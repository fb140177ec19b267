"""
Progressive onboarding tracker for provider profiles.

A provider moves through a fixed number of steps. The stage label that gates
what the profile can do is derived from the current step and the variant's
thresholds every time it is read; the copy kept in storage is only there so
the table can be queried by stage.

Completion is a separate explicit call: the last step carries side effects
(document capture, package creation) that have to succeed first, and those
side effects are recorded per step so a retry never creates them twice.
"""
import datetime
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from .config import config
from .errors import (
    CollaboratorUnavailable,
    InvalidInput,
    MarketplaceError,
    OnboardingLocked,
    StepActionFailed,
)
from .logging import get_logger
from .models import OnboardingStage, OnboardingState, Unverified, Verified, verification_to_item
from .retry import RetryPolicy
from .storage import Storage

logger = get_logger('onboarding')

# Conditional step writes re-read and try again when another session moved
# the step first; this bounds how often.
MAX_STEP_WRITE_ATTEMPTS = 5


@dataclass(frozen=True)
class StageThresholds:
    """
    First step of each stage. `staging` defaults to `live`: in flows without a
    separate staging step, reaching the last step is staging until the
    provider is verified.
    """
    service_defined: int
    live: int
    staging: Optional[int] = None

    @property
    def staging_step(self) -> int:
        return self.live if self.staging is None else self.staging


@dataclass(frozen=True)
class OnboardingVariant:
    name: str
    total_steps: int
    thresholds: StageThresholds

    def __post_init__(self):
        t = self.thresholds
        if not 1 <= t.service_defined <= t.staging_step <= t.live <= self.total_steps:
            raise ValueError(
                f"Thresholds for onboarding variant '{self.name}' must satisfy "
                f"1 <= service_defined <= staging <= live <= {self.total_steps}"
            )

    def clamp(self, step) -> int:
        if isinstance(step, bool) or not isinstance(step, int):
            raise InvalidInput(f"Step must be an integer, got {step!r}")
        return max(1, min(step, self.total_steps))


VARIANTS = {
    # Basic info, services, pricing, documents, background check
    'cleaner': OnboardingVariant('cleaner', 5, StageThresholds(service_defined=2, staging=4, live=5)),
    # Profile, address, payment method
    'customer': OnboardingVariant('customer', 3, StageThresholds(service_defined=2, live=3)),
    # Identity and background check come before services
    'trust_first': OnboardingVariant('trust_first', 4, StageThresholds(service_defined=3, live=4)),
}


def get_variant(name: str = None) -> OnboardingVariant:
    name = name or config.ONBOARDING_VARIANT
    try:
        return VARIANTS[name]
    except KeyError:
        raise InvalidInput(f"Unknown onboarding variant '{name}'", variants=sorted(VARIANTS))


def stage_for_step(step: int, variant: OnboardingVariant) -> str:
    """Stage reached by step progress alone. Never LIVE; that needs verification."""
    thresholds = variant.thresholds
    if step >= thresholds.staging_step:
        return OnboardingStage.STAGING
    if step >= thresholds.service_defined:
        return OnboardingStage.SERVICE_DEFINED
    return OnboardingStage.APPLICANT


def effective_stage(state: OnboardingState, variant: OnboardingVariant) -> str:
    """Stage including completion and verification: only a verified, completed profile is LIVE."""
    if (state.is_complete
            and state.current_step >= variant.thresholds.live
            and isinstance(state.verification, Verified)):
        return OnboardingStage.LIVE
    return stage_for_step(state.current_step, variant)


@dataclass(frozen=True)
class StepAction:
    """
    A side effect attached to an onboarding step.

    Args:
        name: stable identifier, unique within the step
        create: creates the resource for a provider and returns its id
        find: looks up a resource an earlier attempt may already have created;
            returns its id or None
    """
    name: str
    create: Callable[[str], str]
    find: Optional[Callable[[str], Optional[str]]] = None

    def key(self, step: int) -> str:
        return f"{step}:{self.name}"


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class OnboardingTracker:
    """Owns OnboardingState for one onboarding variant."""

    def __init__(
        self,
        storage: Storage,
        variant: OnboardingVariant = None,
        retry_policy: RetryPolicy = None,
        clock: Callable[[], datetime.datetime] = _utc_now
    ):
        self.storage = storage
        self.variant = variant or get_variant()
        self.retry = retry_policy or RetryPolicy()
        self.clock = clock

    def _now(self) -> str:
        return self.clock().isoformat()

    def _with_stage(self, state: OnboardingState) -> OnboardingState:
        state.stage_label = effective_stage(state, self.variant)
        return state

    def _read(self, provider_id: str) -> Optional[OnboardingState]:
        return self.retry.call(
            self.storage.get_onboarding, provider_id, description=f"get onboarding {provider_id}"
        )

    def _load(self, provider_id: str) -> OnboardingState:
        state = self._read(provider_id)
        if state is None:
            raise InvalidInput(f"Provider {provider_id} has not started onboarding", providerId=provider_id)
        return self._with_stage(state)

    def _load_open(self, provider_id: str) -> OnboardingState:
        state = self._load(provider_id)
        if state.is_complete:
            raise OnboardingLocked(f"Onboarding for {provider_id} is already complete", providerId=provider_id)
        return state

    def _write(self, state: OnboardingState, fields: dict) -> bool:
        """Conditional write on the step we read. False if another session moved it."""
        fields = dict(fields, updatedAt=self._now())

        def landed():
            current = self.storage.get_onboarding(state.provider_id)
            if current is None:
                return None
            for attr, value in fields.items():
                if attr != 'updatedAt' and current.to_item().get(attr) != value:
                    return None
            return True

        return self.retry.call(
            self.storage.conditional_update_onboarding,
            state.provider_id,
            state.current_step,
            fields,
            description=f"update onboarding {state.provider_id}",
            recheck=landed,
        )

    def get(self, provider_id: str) -> Optional[OnboardingState]:
        state = self._read(provider_id)
        return self._with_stage(state) if state else None

    def start(self, provider_id: str) -> OnboardingState:
        """Create onboarding at step 1. Calling it again returns the existing state."""
        now = self._now()
        state = OnboardingState(
            provider_id=provider_id,
            variant=self.variant.name,
            current_step=1,
            total_steps=self.variant.total_steps,
            stage_label=stage_for_step(1, self.variant),
            verification=Unverified(),
            created_at=now,
            updated_at=now,
        )
        def exists():
            # An insert that timed out but landed reads back as "already there"
            return False if self.storage.get_onboarding(provider_id) else None

        created = self.retry.call(
            self.storage.insert, state,
            description=f"start onboarding {provider_id}",
            recheck=exists,
        )
        if not created:
            return self._load(provider_id)
        logger.info(f"Started {self.variant.name} onboarding for {provider_id}")
        return self._with_stage(state)

    def _move(self, provider_id: str, to_step, forward: bool) -> OnboardingState:
        target = self.variant.clamp(to_step)
        for _ in range(MAX_STEP_WRITE_ATTEMPTS):
            state = self._load_open(provider_id)
            if (forward and target <= state.current_step) or (not forward and target >= state.current_step):
                return state
            written = self._write(state, {
                'currentStep': target,
                'stageLabel': stage_for_step(target, self.variant),
            })
            if written:
                logger.info(f"Onboarding {provider_id}: step {state.current_step} -> {target}")
                return self._with_stage(replace(state, current_step=target))
        raise CollaboratorUnavailable(
            f"Onboarding step for {provider_id} kept changing underneath the update",
            providerId=provider_id,
        )

    def advance(self, provider_id: str, to_step: int) -> OnboardingState:
        """Move forward to `to_step` (clamped). Never decreases the step."""
        return self._move(provider_id, to_step, forward=True)

    def rewind(self, provider_id: str, to_step: int) -> OnboardingState:
        """Go back to `to_step` (clamped). Never increases the step."""
        return self._move(provider_id, to_step, forward=False)

    def run_step_action(self, provider_id: str, step: int, action: StepAction) -> str:
        """
        Run a step's side effect at most once and return the resource id.

        Already-recorded actions return their stored id without running. Before
        creating, and again after any timeout, `action.find` is asked whether
        the resource exists. Failure leaves the step where it is.
        """
        state = self._load_open(provider_id)
        key = action.key(step)
        if key in state.completed_actions:
            return state.completed_actions[key]

        def find():
            if action.find is None:
                return None
            return self.retry.bounded(action.find, provider_id, description=f"find {key}")

        try:
            resource_id = find() or self.retry.call(
                self.retry.bounded,
                action.create,
                provider_id,
                description=f"onboarding action {key} for {provider_id}",
                recheck=find,
            )
        except CollaboratorUnavailable as e:
            raise StepActionFailed(f"{key} did not finish: {e}", providerId=provider_id, action=key) from e
        except MarketplaceError:
            raise
        except Exception as e:
            logger.error(f"Onboarding action {key} failed for {provider_id}: {e}")
            raise StepActionFailed(f"{key} failed: {e}", providerId=provider_id, action=key) from e

        self._record_action(provider_id, key, resource_id)
        return resource_id

    def _record_action(self, provider_id: str, key: str, resource_id: str) -> None:
        for _ in range(MAX_STEP_WRITE_ATTEMPTS):
            state = self._load_open(provider_id)
            actions = dict(state.completed_actions, **{key: resource_id})
            if self._write(state, {'completedActions': actions}):
                logger.info(f"Onboarding {provider_id}: recorded {key} -> {resource_id}")
                return
        raise CollaboratorUnavailable(
            f"Could not record onboarding action {key} for {provider_id}",
            providerId=provider_id,
        )

    def complete(self, provider_id: str, actions: Iterable[StepAction] = ()) -> OnboardingState:
        """
        Run the final step's actions and mark onboarding complete.

        Safe to call again after a partial failure: finished actions are skipped.
        """
        state = self._read(provider_id)
        if state is not None and state.is_complete:
            return self._with_stage(state)

        state = self._load_open(provider_id)
        if state.current_step != self.variant.total_steps:
            raise InvalidInput(
                f"Onboarding is on step {state.current_step} of {self.variant.total_steps}",
                providerId=provider_id,
            )

        for action in actions:
            self.run_step_action(provider_id, state.current_step, action)

        for _ in range(MAX_STEP_WRITE_ATTEMPTS):
            state = self._load_open(provider_id)
            if state.current_step != self.variant.total_steps:
                raise InvalidInput(
                    f"Onboarding moved to step {state.current_step} before completion",
                    providerId=provider_id,
                )
            now = self._now()
            completed = replace(state, is_complete=True, completed_at=now)
            written = self._write(state, {
                'isComplete': True,
                'completedAt': now,
                'stageLabel': effective_stage(completed, self.variant),
            })
            if written:
                logger.info(f"Onboarding complete for {provider_id}")
                return self._with_stage(completed)
        raise CollaboratorUnavailable(
            f"Could not mark onboarding complete for {provider_id}", providerId=provider_id
        )

    def record_verification(self, provider_id: str, verification) -> OnboardingState:
        """
        Store the outcome of the background/identity check.

        Only the verification attribute is written, so progress made by another
        session in the meantime is kept. The cached stage label is refreshed
        only while the step and completion it was computed from still hold.
        """
        if not isinstance(verification, (Verified, Unverified)):
            raise InvalidInput(f"Unknown verification {verification!r}")
        stored = self.retry.call(
            self.storage.update_onboarding_attributes,
            provider_id,
            {'verification': verification_to_item(verification), 'updatedAt': self._now()},
            description=f"record verification {provider_id}",
        )
        if stored is None:
            raise InvalidInput(f"Provider {provider_id} has not started onboarding", providerId=provider_id)

        stage = effective_stage(stored, self.variant)
        if stored.stage_label != stage:
            self.retry.call(
                self.storage.update_onboarding_attributes,
                provider_id,
                {'stageLabel': stage},
                {'currentStep': stored.current_step, 'isComplete': stored.is_complete},
                description=f"refresh stage {provider_id}",
            )
        logger.info(f"Provider {provider_id} verification: {type(verification).__name__}")
        return self._with_stage(stored)

    def can_receive_offers(self, provider_id: str) -> bool:
        state = self.get(provider_id)
        return state is not None and state.stage_label == OnboardingStage.LIVE
