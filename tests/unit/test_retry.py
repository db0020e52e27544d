import pytest

from forgeflow.errors import StateConflictError
from forgeflow.graph import BackoffStrategy, RetryPolicy
from forgeflow.utils.retry import attempts_remain, compute_backoff, retry_on_conflict


def test_exponential_backoff_grows_and_caps():
    policy = RetryPolicy(backoff_base=1.0, multiplier=2.0, max_backoff=5.0)

    delays = [compute_backoff(policy, n) for n in range(1, 6)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_fixed_backoff_is_constant():
    policy = RetryPolicy(backoff_base=3.0, strategy=BackoffStrategy.FIXED)

    assert {compute_backoff(policy, n) for n in range(1, 5)} == {3.0}


def test_jitter_is_added_after_cap():
    policy = RetryPolicy(backoff_base=10.0, max_backoff=10.0, jitter=0.5)

    delay = compute_backoff(policy, 3)

    assert 10.0 <= delay <= 10.5


def test_attempt_numbers_start_at_one():
    with pytest.raises(ValueError):
        compute_backoff(RetryPolicy(), 0)


def test_attempts_remain_until_max():
    policy = RetryPolicy(max_attempts=3)

    assert [attempts_remain(policy, n) for n in (1, 2, 3)] == [True, True, False]


def test_policy_rejects_invalid_values():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_base=-1)


@pytest.mark.asyncio
async def test_retry_on_conflict_reruns_until_success():
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) < 3:
            raise StateConflictError("lost race")
        return "done"

    assert await retry_on_conflict(operation) == "done"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_on_conflict_propagates_other_errors():
    async def operation():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await retry_on_conflict(operation)
