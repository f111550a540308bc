from __future__ import annotations

import time
from typing import Callable, Literal

from pydantic import BaseModel, Field

from .identity import Identity
from .resolver import EntitlementResolver, Resolution

HARD_MAX_ATTEMPTS = 10

VerificationState = Literal["confirmed", "processing", "not_verified"]


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    interval_seconds: float = Field(default=2.0, ge=0)
    backoff: float = Field(default=1.0, ge=1.0)

    def should_retry(self, attempt: int) -> bool:
        """``attempt`` is the number of attempts already made."""
        return attempt < min(self.max_attempts, HARD_MAX_ATTEMPTS)

    def delay_for(self, attempt: int) -> float:
        return self.interval_seconds * (self.backoff ** max(0, attempt - 1))


class VerificationResult(BaseModel):
    state: VerificationState
    attempts: int
    resolution: Resolution


def verification_state(resolution: Resolution) -> VerificationState:
    if resolution.entitled:
        return "confirmed"
    if resolution.pending_payment:
        return "processing"
    return "not_verified"


def poll_entitlement(
    resolver: EntitlementResolver,
    identity: Identity,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> VerificationResult:
    attempt = 0
    resolution = Resolution(entitled=False, source="none")
    while policy.should_retry(attempt):
        if attempt:
            sleep(policy.delay_for(attempt))
        attempt += 1
        resolution = resolver.check(identity)
        if resolution.entitled:
            break
    return VerificationResult(state=verification_state(resolution), attempts=attempt, resolution=resolution)
