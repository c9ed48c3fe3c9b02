"""Bounded retry for the VM reachability wait.

Only the boot wait goes through here. Provisioning apply/destroy and workspace
commands have side effects and are never retried.
"""

from __future__ import annotations

import logging as py_logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

T = TypeVar("T")

logger = py_logging.getLogger(__name__)


class RecoverableError(Exception):
    """Transient failure that can be retried."""


class FatalError(Exception):
    """Non-recoverable failure that should stop immediately."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    multiplier: float = 2.0


def run_with_retry(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    attempt = 0
    backoff = policy.initial_backoff_seconds
    last_error: Exception | None = None

    while attempt < policy.max_attempts:
        attempt += 1
        try:
            return operation()
        except FatalError:
            raise
        except RecoverableError as exc:
            last_error = exc
            logger.warning(
                "%s failed attempt=%s/%s error=%s",
                description,
                attempt,
                policy.max_attempts,
                exc,
            )
            if attempt >= policy.max_attempts:
                break
            sleep(backoff)
            backoff *= policy.multiplier

    if last_error is not None:
        raise last_error
    raise RuntimeError("Retry policy exhausted without executing operation.")
