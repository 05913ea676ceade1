"""
Retry policy for provider calls: transient errors back off exponentially,
everything else is raised on the first failure.
"""
import logging

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from converge.errors import ProviderTransientError

logger = logging.getLogger(__name__)


def retrying(label: str, max_attempts: int = 5, backoff_multiplier: float = 0.5,
             backoff_max: float = 10.0) -> Retrying:
    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_multiplier, max=backoff_max),
        retry=retry_if_exception_type(ProviderTransientError),
        before_sleep=lambda state: logger.warning(
            "%s: attempt %d failed (%s), retrying",
            label, state.attempt_number, state.outcome.exception(),
        ),
        reraise=True,
    )
