"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import random
import time
from typing import Callable, TypeVar

from ..errors import TransactionConflict
from .logging_config import StructuredLogger

logger = StructuredLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    attempts: int = 5,
    backoff: float = 0.05,
    retry_on: tuple[type[BaseException], ...] = (TransactionConflict,),
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` is exhausted.

    The delay starts at ``backoff`` seconds and doubles after each failure,
    with +/-20% jitter. The last error is re-raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    current_backoff = backoff
    for attempt in range(attempts):
        try:
            return operation()
        except retry_on as exc:
            if attempt == attempts - 1:
                raise
            wait_time = current_backoff * random.uniform(0.8, 1.2)
            logger.warning(
                "Retrying after transient failure",
                label=label,
                attempt=attempt + 1,
                wait_seconds=round(wait_time, 4),
                error=str(exc),
            )
            time.sleep(wait_time)
            current_backoff *= 2
    raise AssertionError("unreachable")
