"""Retry bookkeeping for failed container creation attempts.

Retry state is kept in memory per issue. Each failure schedules the next
attempt with linear backoff (interval × attempt). Once the attempt count
reaches the maximum the coordinator answers ``ESCALATE`` and forgets the
issue, so a later failure starts again from attempt 1.

State does not survive a restart. The persisted lifecycle label stays the
source of truth: an issue left in WIP is not retried automatically.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_INTERVAL = timedelta(minutes=30)


class RetryState(BaseModel):
    """Retry progress for a single issue.

    Attributes:
        issue_id: Instance-wide identity of the issue.
        current_attempt: Number of failures recorded so far.
        max_attempts: Failures allowed before escalation.
        last_attempt_at: When the last failure was recorded.
        last_error: Message of the last failure.
        next_retry_at: When the issue becomes due for another attempt.
    """

    issue_id: int
    current_attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class RetryAction(str, Enum):
    """What the caller should do after a failure."""

    RETRY = "retry"
    ESCALATE = "escalate"


class RetryDecision(BaseModel):
    """Outcome of recording a failure.

    ``next_retry_at`` is set for RETRY decisions only.
    """

    action: RetryAction
    issue_id: int
    attempt: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY

    @property
    def should_escalate(self) -> bool:
        return self.action == RetryAction.ESCALATE


class RetryCoordinator:
    """Tracks failures per issue and decides between retry and escalation.

    Attributes:
        max_attempts: Failures allowed before escalation.
        retry_interval: Backoff unit; attempt ``n`` waits ``n × interval``.

    Example:
        >>> coordinator = RetryCoordinator()
        >>> decision = coordinator.record_failure(1, "container timed out")
        >>> decision.action
        <RetryAction.RETRY: 'retry'>
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_interval: timedelta = DEFAULT_RETRY_INTERVAL,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.retry_interval = retry_interval
        self._states: Dict[int, RetryState] = {}

    def record_failure(
        self,
        issue_id: int,
        error: Union[str, BaseException],
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        """Record a failed attempt and decide what happens next.

        Args:
            issue_id: The failing issue.
            error: The failure, or its message.
            now: Current time; defaults to the wall clock (UTC).

        Returns:
            RETRY with ``next_retry_at`` while attempts remain, otherwise
            ESCALATE. State is discarded on ESCALATE.
        """
        now = now or datetime.now(timezone.utc)
        message = str(error)

        state = self._states.get(issue_id)
        if state is None:
            state = RetryState(issue_id=issue_id, max_attempts=self.max_attempts)
            self._states[issue_id] = state

        state.current_attempt += 1
        state.last_attempt_at = now
        state.last_error = message

        if state.current_attempt >= state.max_attempts:
            del self._states[issue_id]
            logger.warning(
                "Retry attempts exhausted, escalating",
                extra={
                    "issue_id": issue_id,
                    "attempt": state.current_attempt,
                    "max_attempts": state.max_attempts,
                    "error": message,
                },
            )
            return RetryDecision(
                action=RetryAction.ESCALATE,
                issue_id=issue_id,
                attempt=state.current_attempt,
                max_attempts=state.max_attempts,
                last_error=message,
            )

        state.next_retry_at = now + self.retry_interval * state.current_attempt
        logger.info(
            "Retry scheduled",
            extra={
                "issue_id": issue_id,
                "attempt": state.current_attempt,
                "max_attempts": state.max_attempts,
                "next_retry_at": state.next_retry_at.isoformat(),
                "error": message,
            },
        )
        return RetryDecision(
            action=RetryAction.RETRY,
            issue_id=issue_id,
            attempt=state.current_attempt,
            max_attempts=state.max_attempts,
            next_retry_at=state.next_retry_at,
            last_error=message,
        )

    def record_success(self, issue_id: int) -> None:
        """Forget an issue after a successful attempt."""
        if self._states.pop(issue_id, None) is not None:
            logger.info("Retry state cleared after success", extra={"issue_id": issue_id})

    def reset(self, issue_id: int) -> None:
        """Forget an issue after it was manually reset."""
        if self._states.pop(issue_id, None) is not None:
            logger.info("Retry state reset", extra={"issue_id": issue_id})

    def due_for_retry(self, now: Optional[datetime] = None) -> List[RetryState]:
        """Return the states whose backoff window has elapsed."""
        now = now or datetime.now(timezone.utc)
        return [
            state
            for state in self._states.values()
            if state.next_retry_at is not None and state.next_retry_at <= now
        ]

    def get_state(self, issue_id: int) -> Optional[RetryState]:
        return self._states.get(issue_id)

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, issue_id: object) -> bool:
        return issue_id in self._states
