"""
Bounded fixed-interval retry.

Used wherever the provisioner waits for an external service it just
started (Ollama API, gateway port).  No backoff, no jitter: poll every
``interval`` seconds, give up after ``attempts`` tries.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .errors import DependencyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    interval: float = 2.0
    attempts: int = 15
    # Shown to the operator when the policy is exhausted
    diagnostic: str = ""

    def poll(self, ready: Callable[[], bool], what: str, *, sleep: Callable[[float], None] | None = None) -> bool:
        """Call *ready* until it returns ``True`` or attempts run out.

        An :class:`OSError` raised by *ready* counts as a failed attempt;
        any other exception propagates.
        """
        sleep = sleep or time.sleep
        for attempt in range(1, self.attempts + 1):
            try:
                if ready():
                    logger.debug("%s ready after %d attempt(s)", what, attempt)
                    return True
            except OSError as exc:
                logger.debug("%s not ready: %s", what, exc)
            if attempt < self.attempts:
                sleep(self.interval)
        return False

    def wait(self, ready: Callable[[], bool], what: str, *, stage: str = "", sleep: Callable[[float], None] | None = None) -> None:
        """Like :meth:`poll` but raises :class:`DependencyError` on exhaustion."""
        logger.info("Waiting for %s (every %ss, max %d attempts) …", what, self.interval, self.attempts)
        if not self.poll(ready, what, sleep=sleep):
            raise DependencyError(
                f"{what} did not become reachable after {self.attempts} attempts "
                f"({self.attempts * self.interval:.0f}s)",
                stage=stage,
                hint=self.diagnostic,
            )
        logger.info("%s is reachable", what)
