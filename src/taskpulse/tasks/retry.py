# src/taskpulse/tasks/retry.py

from __future__ import annotations

from .task_models import BackoffKind, RetryPolicy, Task


def backoff_ms(policy: RetryPolicy, attempts: int) -> int:
    """
    Delay before the next attempt.

    `attempts` counts failures so far (>= 1 after the first failure):
      FIXED       -> backoff_ms
      EXPONENTIAL -> backoff_ms * 2 ** (attempts - 1)
    """
    n = max(1, int(attempts))
    if policy.backoff_kind == BackoffKind.EXPONENTIAL:
        return policy.backoff_ms * (2 ** (n - 1))
    return policy.backoff_ms


def should_retry(task: Task) -> bool:
    policy = task.retry_policy
    return policy is not None and task.attempts < policy.max_attempts


def next_retry_at(task: Task, now: int) -> int | None:
    policy = task.retry_policy
    if policy is None or task.attempts >= policy.max_attempts:
        return None
    return int(now) + backoff_ms(policy, task.attempts)
