"""Error types shared across the dispatcher.

Every failure that crosses a component boundary is one of these. The
orchestrator decides per type whether a failure is skipped (contention),
logged and deferred to the next tick (store), or routed through the
retry coordinator (provisioning, delegation).
"""

from typing import Optional


class DispatcherError(Exception):
    """Base class for dispatcher failures.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class StoreError(DispatcherError):
    """Raised when a persistence operation fails for a reason other than
    lock contention."""


class ContentionError(DispatcherError):
    """Raised when the scheduling row locks are held by another pass.

    Never escapes the scheduler: the selection for that cycle is simply
    empty.
    """


class ProvisioningError(DispatcherError):
    """Raised when a compute unit cannot be created or never becomes ready.

    Attributes:
        unit_id: The compute unit involved, if one was created.
    """

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=original_error)
        self.unit_id = unit_id


class DelegationError(DispatcherError):
    """Raised when a compute unit rejects the task handoff or times out.

    Attributes:
        unit_id: The compute unit the task was sent to.
        status_code: HTTP status code returned by the unit, if any.
    """

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, original_error=original_error)
        self.unit_id = unit_id
        self.status_code = status_code
