# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy for failed dispatch attempts.

Failed sends are retried with exponential backoff starting from
``retry_delay_ms`` and capped at ``max_delay_ms``. A random jitter takes up
to ``jitter_ratio`` off each delay so that messages failing together do not
come back together.

Failures are also classified: a failure that looks like the messaging
provider pushing back (throttling, temporary bans) is a *provider signal*.
It is still retried, but it puts the account into a health cooldown.
"""

from __future__ import annotations

import asyncio
import random
import re

from .errors import TransportError

DEFAULT_JITTER_RATIO = 0.2

PROVIDER_SIGNAL_RE = re.compile(
    r"\b(?:rate[- ]overlimit|rate[- ]limit(?:ed)?|too many requests|(?:temporarily )?banned|spam|account (?:is )?blocked)\b",
    re.IGNORECASE,
)


class RetryStrategy:
    """Backoff and classification rules for transport failures.

    Args:
        jitter_ratio: Fraction of the delay that may be randomly removed.
        rng: Random source, injectable for deterministic tests.
    """

    def __init__(self, jitter_ratio: float = DEFAULT_JITTER_RATIO, rng: random.Random | None = None):
        self.jitter_ratio = min(max(jitter_ratio, 0.0), 1.0)
        self.rng = rng or random.Random()

    def calculate_delay(self, attempts: int, retry_delay_ms: int, max_delay_ms: int) -> int:
        """Delay before the next attempt, in milliseconds.

        Args:
            attempts: Attempts made so far (1 after the first failure).
            retry_delay_ms: Backoff base.
            max_delay_ms: Ceiling applied before jitter.

        Returns:
            ``min(max_delay_ms, retry_delay_ms * 2 ** (attempts - 1))`` minus
            up to ``jitter_ratio`` of itself.
        """
        exponent = max(0, attempts - 1)
        # Bound the exponent so huge attempt counts cannot overflow into floats.
        delay = min(max_delay_ms, retry_delay_ms * (2 ** min(exponent, 30)))
        if delay <= 0:
            return 0
        jitter = self.rng.uniform(0, delay * self.jitter_ratio)
        return max(0, int(delay - jitter))

    @staticmethod
    def should_retry(attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts

    @staticmethod
    def classify_error(exc: BaseException) -> tuple[bool, bool]:
        """Classify a dispatch failure.

        Returns:
            tuple: (retryable, provider_signal). Every transport failure and
            timeout is retryable; ``provider_signal`` marks throttling or ban
            responses from the messaging network.
        """
        if isinstance(exc, TransportError) and exc.provider_signal:
            return True, True
        if isinstance(exc, TransportError) and exc.status == 429:
            return True, True
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return True, False
        if PROVIDER_SIGNAL_RE.search(str(exc)):
            return True, True
        return True, False
