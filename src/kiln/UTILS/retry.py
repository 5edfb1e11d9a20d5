"""
Retry policy for transient provisioning failures.
"""
import logging

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import ProvisionError

logger = logging.getLogger(__name__)


def is_transient(exc: BaseException) -> bool:
    """Only network-level provisioning faults are worth another attempt."""
    return isinstance(exc, ProvisionError) and exc.transient


def transient_retrying(attempts: int = 3, backoff: float = 1.0) -> Retrying:
    """
    Builds a tenacity ``Retrying`` that retries transient ProvisionErrors with
    exponential backoff and re-raises the last error once attempts run out.
    """
    return Retrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=backoff, max=60),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
