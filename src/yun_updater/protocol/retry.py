"""
Retry controller around the flash orchestrator.

A failed attempt is rerun with freshly allocated network addresses. The
controller is the only place a console failure turns into another attempt.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .orchestrator import FlashOutcome
from ..core.config import DEFAULT_MAX_ATTEMPTS
from ..models import SessionContext

logger = logging.getLogger(__name__)

# (previous server address) -> (server address, device address)
Allocator = Callable[[Optional[str]], Tuple[str, str]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Decide whether a failed attempt is worth another run.

    Protocol timeouts and verification mismatches are retried; transport
    errors (port gone, write failed) are not. When ``signatures`` is set,
    only failures whose output contains one of them are retried.
    """
    retry_timeouts: bool = True
    retry_mismatches: bool = True
    signatures: Tuple[str, ...] = ()

    def should_retry(self, outcome: FlashOutcome) -> bool:
        if outcome.ok:
            return False
        kind = outcome.error_kind
        if kind == "timeout" and not self.retry_timeouts:
            return False
        if kind == "mismatch" and not self.retry_mismatches:
            return False
        if kind not in ("timeout", "mismatch"):
            return False
        if self.signatures:
            return any(sig in outcome.output for sig in self.signatures)
        return True


def run_with_retries(
    run_attempt: Callable[[SessionContext], FlashOutcome],
    context: SessionContext,
    allocate: Allocator,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    policy: Optional[RetryPolicy] = None,
) -> FlashOutcome:
    """
    Run the orchestrator until it succeeds or the budget is spent.

    Args:
        run_attempt: Runs one orchestrator attempt for a context
        context: Session context; addresses are rewritten between attempts
        allocate: Derives new (server, device) addresses, given the
            previous server address
        max_attempts: Total runs, including the first
        policy: Which failures are retried (default RetryPolicy())

    Returns:
        The last FlashOutcome, unchanged
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    policy = policy or RetryPolicy()

    outcome = run_attempt(context)
    attempts = 1

    while not outcome.ok and attempts < max_attempts and policy.should_retry(outcome):
        logger.warning(f"Attempt {attempts} failed in stage {outcome.stage}: {outcome.error}")
        if outcome.output:
            logger.info(outcome.output.strip())

        if outcome.flash_bootloader and not context.flash_bootloader:
            context.flash_bootloader = True

        server, device = allocate(context.server_address)
        context.server_address = server
        context.device_address = device
        logger.info(f"Retrying with {server} as server address and {device} as board address")

        outcome = run_attempt(context)
        attempts += 1

    if not outcome.ok:
        logger.error(f"Giving up after {attempts} attempt(s): {outcome.error}")
    return outcome
