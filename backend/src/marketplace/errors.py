"""
Error kinds raised by the job engine, payout calculator and onboarding tracker.

Handlers turn these into API Gateway responses via `http_status`.
"""


class MarketplaceError(Exception):
    """Base class for engine errors."""
    http_status = 500
    retryable = False

    def __init__(self, message: str = '', **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context

    def to_dict(self) -> dict:
        body = {'error': self.__class__.__name__, 'message': self.message}
        if self.context:
            body['context'] = self.context
        return body


class InvalidTransition(MarketplaceError):
    """Move not allowed from the job's current status. Refresh and re-display."""
    http_status = 409

    def __init__(self, job_id: str, transition: str, actual_status: str, allowed=()):
        super().__init__(
            f"Cannot {transition} job {job_id} from status '{actual_status}'",
            jobId=job_id,
            transition=transition,
            actualStatus=actual_status,
            allowedFrom=sorted(allowed),
        )
        self.job_id = job_id
        self.transition = transition
        self.actual_status = actual_status


class AlreadyClaimed(MarketplaceError):
    """Another fulfiller won the race to accept this job."""
    http_status = 409

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} was already accepted by another provider", jobId=job_id)
        self.job_id = job_id


class Unauthorized(MarketplaceError):
    """Acting party is not permitted to perform this action on the job."""
    http_status = 403


class InvalidInput(MarketplaceError):
    """Bad price, duration, fee rate or step input."""
    http_status = 400


class JobNotFound(MarketplaceError):
    http_status = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found", jobId=job_id)
        self.job_id = job_id


class CollaboratorUnavailable(MarketplaceError):
    """Timeout or 5xx from storage, payment or another external collaborator."""
    http_status = 503
    retryable = True


class SettlementFailed(MarketplaceError):
    """Payment collaborator rejected the settlement. Job stays in progress."""
    http_status = 402


class OnboardingLocked(MarketplaceError):
    """Onboarding is complete and can no longer be changed by the tracker."""
    http_status = 409


class StepActionFailed(MarketplaceError):
    """A side-effecting onboarding step (upload, package creation) failed."""
    http_status = 502
