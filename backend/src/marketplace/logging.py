"""
Logging utilities for Lambda handlers and the job engine.
"""
import logging
import json

# Configure logger
logger = logging.getLogger('marketplace')
logger.setLevel(logging.INFO)

# Add handler if not already configured
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Child logger under the 'marketplace' namespace."""
    return logger.getChild(name)


def log_event(event: dict) -> None:
    """Log incoming Lambda event for debugging."""
    try:
        # Avoid logging sensitive data
        safe_event = {k: v for k, v in event.items() if k not in ['body', 'headers']}
        logger.info(f"Lambda event: {json.dumps(safe_event, default=str)}")
    except Exception as e:
        logger.warning(f"Could not log event: {e}")


def log_reconciliation_context(
    job_id: str,
    transition: str,
    expected_status: str = None,
    actual_status: str = None,
    **details
) -> None:
    """
    Log a money- or exclusivity-affecting failure as a single JSON line.

    Carries enough to reconcile by hand: the job, the attempted transition,
    and the status the engine expected versus the one it found.
    """
    record = {
        'jobId': job_id,
        'transition': transition,
        'expectedStatus': expected_status,
        'actualStatus': actual_status,
    }
    record.update(details)
    logger.error(f"Reconciliation required: {json.dumps(record, default=str)}")
