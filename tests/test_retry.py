"""Tests for the retry controller."""

import pytest

from yun_updater.protocol.console import ConsoleTimeout, ConsoleTransportError, VerificationMismatch
from yun_updater.protocol.orchestrator import FlashOutcome
from yun_updater.protocol.retry import RetryPolicy, run_with_retries


class CountingAllocator:
    def __init__(self):
        self.calls = []

    def __call__(self, previous):
        self.calls.append(previous)
        n = len(self.calls)
        return f"10.0.{n}.1", f"10.0.{n}.2"


def failing(error, output="last output"):
    runs = []

    def run_attempt(context):
        runs.append((context.server_address, context.device_address))
        return FlashOutcome(ok=False, output=f"{output} {len(runs)}", error=error, stage="firmware")

    return run_attempt, runs


class TestRetryBudget:
    """Total runs and propagation of the final outcome."""

    @pytest.mark.parametrize("max_attempts", [1, 2, 4])
    def test_exact_attempt_count(self, context, max_attempts):
        run_attempt, runs = failing(ConsoleTimeout("timed out"))
        run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=max_attempts)
        assert len(runs) == max_attempts

    def test_last_outcome_unchanged(self, context):
        error = ConsoleTimeout("timed out")
        run_attempt, _ = failing(error)
        outcome = run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=3)
        assert outcome.error is error
        assert outcome.output == "last output 3"

    def test_stops_on_success(self, context):
        results = [
            FlashOutcome(ok=False, error=ConsoleTimeout("t"), stage="network"),
            FlashOutcome(ok=True, output="Starting kernel", stage="firmware"),
        ]
        calls = []

        def run_attempt(ctx):
            calls.append(ctx)
            return results[len(calls) - 1]

        outcome = run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=4)
        assert outcome.ok
        assert len(calls) == 2

    def test_invalid_budget(self, context):
        run_attempt, _ = failing(ConsoleTimeout("t"))
        with pytest.raises(ValueError):
            run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=0)


class TestAddressRefresh:
    """Each retry runs with freshly allocated addresses."""

    def test_allocator_called_between_attempts(self, context):
        allocate = CountingAllocator()
        run_attempt, runs = failing(ConsoleTimeout("t"))
        run_with_retries(run_attempt, context, allocate, max_attempts=3)

        assert allocate.calls == ["192.168.1.10", "10.0.1.1"]
        assert runs == [
            ("192.168.1.10", "192.168.1.11"),
            ("10.0.1.1", "10.0.1.2"),
            ("10.0.2.1", "10.0.2.2"),
        ]

    def test_bootloader_decision_carried(self, context):
        seen = []

        def run_attempt(ctx):
            seen.append(ctx.flash_bootloader)
            return FlashOutcome(ok=False, error=ConsoleTimeout("t"), flash_bootloader=True)

        run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=2)
        assert seen == [False, True]


class TestRetryPolicy:
    """Which failures are worth another attempt."""

    def test_transport_error_not_retried(self, context):
        run_attempt, runs = failing(ConsoleTransportError("port gone"))
        run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=4)
        assert len(runs) == 1

    def test_mismatch_retried_by_default(self, context):
        run_attempt, runs = failing(VerificationMismatch("bytes"))
        run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=3)
        assert len(runs) == 3

    def test_mismatch_retry_disabled(self):
        policy = RetryPolicy(retry_mismatches=False)
        outcome = FlashOutcome(ok=False, error=VerificationMismatch("bytes"))
        assert not policy.should_retry(outcome)

    def test_signature_required(self, context):
        policy = RetryPolicy(signatures=("Retry count exceeded",))
        run_attempt, runs = failing(ConsoleTimeout("t"), output="TFTP error")
        run_with_retries(run_attempt, context, CountingAllocator(), max_attempts=4, policy=policy)
        assert len(runs) == 1

    def test_signature_matches(self):
        policy = RetryPolicy(signatures=("Retry count exceeded",))
        outcome = FlashOutcome(
            ok=False,
            output="Loading: T T T\r\nRetry count exceeded; starting again",
            error=ConsoleTimeout("t"),
        )
        assert policy.should_retry(outcome)

    def test_success_never_retried(self):
        assert not RetryPolicy().should_retry(FlashOutcome(ok=True))
