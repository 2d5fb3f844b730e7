from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .config import ReconnectState

RetryAction = Literal["retry", "pending", "exhausted"]


class RetryDecision(BaseModel):
    action: RetryAction
    delay: float = 0.0
    attempt: int = 0
    max_attempts: int = 0

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def should_retry(self) -> bool:
        return self.action == "retry"


class ReconnectPolicy(BaseModel):
    """Exponential backoff: ``2**retry_count * base_delay`` until ``max_retries``."""

    max_retries: int = Field(default=5, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    def backoff(self, retry_count: int) -> float | None:
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        if retry_count >= self.max_retries:
            return None
        return float(2**retry_count) * self.base_delay

    def decide(self, state: ReconnectState) -> RetryDecision:
        # One outstanding retry at a time; a failure reported while a retry
        # is pending does not schedule another.
        if state.is_reconnecting:
            return RetryDecision(action="pending", max_attempts=self.max_retries)
        delay = self.backoff(state.retry_count)
        if delay is None:
            return RetryDecision(action="exhausted", max_attempts=self.max_retries)
        return RetryDecision(
            action="retry",
            delay=delay,
            attempt=state.retry_count + 1,
            max_attempts=self.max_retries,
        )
