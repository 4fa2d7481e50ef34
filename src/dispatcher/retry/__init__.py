"""Retry bookkeeping with linear backoff and escalation."""

from src.dispatcher.retry.coordinator import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_INTERVAL,
    RetryAction,
    RetryCoordinator,
    RetryDecision,
    RetryState,
)

__all__ = [
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_INTERVAL",
    "RetryAction",
    "RetryCoordinator",
    "RetryDecision",
    "RetryState",
]
