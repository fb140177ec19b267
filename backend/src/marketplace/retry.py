"""
Bounded retry policy shared by every collaborator call.

boto3 clients are built with a fixed connect/read timeout and botocore's own
retries switched off, so this policy is the only place attempts and backoff
are decided. Plain callables (onboarding side effects, geolocation) are
bounded with a worker-thread future.
"""
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Callable, Optional

from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .config import config
from .errors import CollaboratorUnavailable
from .logging import get_logger

logger = get_logger('retry')

TRANSIENT_ERROR_CODES = {
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'InternalServerError',
    'ServiceUnavailable',
    'TransactionInProgressException',
}

# Per-item reasons on a cancelled transaction that a later attempt can clear
TRANSIENT_CANCELLATION_REASONS = {
    'TransactionConflict',
    'ThrottlingError',
    'ProvisionedThroughputExceeded',
}

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix='collaborator')


def boto_config(timeout: float = None) -> BotoConfig:
    """Client config with a hard per-call ceiling and no hidden retries."""
    timeout = config.COLLABORATOR_TIMEOUT_SECONDS if timeout is None else timeout
    return BotoConfig(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={'mode': 'standard', 'total_max_attempts': 1},
    )


def is_transient_cancellation(error: ClientError) -> bool:
    """
    True for a TransactionCanceledException caused by contention or throttling.

    A cancellation that includes a failed condition is a real answer (the
    item already exists), so it is never treated as transient.
    """
    if error.response.get('Error', {}).get('Code') != 'TransactionCanceledException':
        return False
    reasons = {r.get('Code') for r in error.response.get('CancellationReasons', [])}
    if 'ConditionalCheckFailed' in reasons:
        return False
    return bool(reasons & TRANSIENT_CANCELLATION_REASONS)


@contextmanager
def transient_aws_errors(description: str):
    """Turn timeouts, throttling and 5xx from AWS into CollaboratorUnavailable."""
    try:
        yield
    except (ConnectTimeoutError, ReadTimeoutError) as e:
        raise CollaboratorUnavailable(f"{description} timed out: {e}", timeout=True) from e
    except (EndpointConnectionError, ConnectionClosedError) as e:
        raise CollaboratorUnavailable(f"{description} unreachable: {e}") from e
    except ClientError as e:
        code = e.response.get('Error', {}).get('Code', '')
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        if code in TRANSIENT_ERROR_CODES or status >= 500 or is_transient_cancellation(e):
            raise CollaboratorUnavailable(f"{description} failed: {code}", code=code) from e
        raise


class RetryPolicy:
    """
    Exponential backoff over a fixed number of attempts.

    Only CollaboratorUnavailable is retried. Everything else propagates on
    the first attempt.
    """

    def __init__(
        self,
        max_attempts: int = None,
        base_delay: float = None,
        max_delay: float = None,
        timeout: float = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.max_attempts = max(1, config.RETRY_MAX_ATTEMPTS if max_attempts is None else max_attempts)
        self.base_delay = config.RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.max_delay = config.RETRY_MAX_DELAY_SECONDS if max_delay is None else max_delay
        self.timeout = config.COLLABORATOR_TIMEOUT_SECONDS if timeout is None else timeout
        self.sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def call(
        self,
        operation: Callable[..., Any],
        *args,
        description: str = 'collaborator call',
        recheck: Optional[Callable[[], Any]] = None,
        **kwargs
    ) -> Any:
        """
        Run `operation` until it succeeds or attempts run out.

        After a failed attempt, `recheck` (if given) is asked whether the
        effect already landed. A non-None answer is returned as the result
        instead of retrying, so a write that timed out but applied is not
        repeated.
        """
        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation(*args, **kwargs)
            except CollaboratorUnavailable as e:
                last_error = e
                logger.warning(f"{description} attempt {attempt}/{self.max_attempts} failed: {e}")

            if recheck is not None:
                try:
                    found = recheck()
                except CollaboratorUnavailable as e:
                    logger.warning(f"{description} recheck failed: {e}")
                    found = None
                if found is not None:
                    logger.info(f"{description} had already been applied, not retrying")
                    return found

            if attempt < self.max_attempts:
                self.sleep(self.delay_for(attempt))

        raise CollaboratorUnavailable(
            f"{description} failed after {self.max_attempts} attempts",
            attempts=self.max_attempts,
        ) from last_error

    def bounded(self, operation: Callable[..., Any], *args, description: str = 'collaborator call', **kwargs) -> Any:
        """Run a plain callable with the per-call timeout ceiling."""
        future = _executor.submit(operation, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise CollaboratorUnavailable(
                f"{description} timed out after {self.timeout}s", timeout=True
            )
