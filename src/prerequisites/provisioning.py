"""Idempotent provisioning primitives.

Resource managers in this package follow one pattern: look the
resource up by its natural key, return early when an equivalent one
exists, refuse when a conflicting one exists, otherwise create it and,
for asynchronous creations, poll until the provider reports a terminal
state. The helpers here carry the state model, the poll loop, the
conflict/rollback errors and the dry-run message format they share.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


logger = logging.getLogger(__name__)

NO_REASON_PROVIDED = "No reason provided"


class ProvisioningStatus(Enum):
    """Lifecycle of an asynchronous creation."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ProvisioningState:
    """Observed state of a resource creation.

    Attributes:
        status: Lifecycle status
        reason: Failure diagnostics; set only for FAILED
        resource_id: Provider identifier once known
    """

    status: ProvisioningStatus
    reason: Optional[str] = None
    resource_id: Optional[str] = None

    @classmethod
    def failed(cls, reason: Optional[str] = None, resource_id: Optional[str] = None) -> 'ProvisioningState':
        return cls(ProvisioningStatus.FAILED, reason or NO_REASON_PROVIDED, resource_id)

    @property
    def terminal(self) -> bool:
        return self.status in (ProvisioningStatus.SUCCEEDED, ProvisioningStatus.FAILED)


class RollbackOutcome(Enum):
    """What happened to the previous resource after a failed replacement."""

    NOT_REQUIRED = "not-required"
    RESTORED = "restored"
    FAILED = "failed"


class ProvisioningError(Exception):
    """Base exception for provisioning operations."""
    pass


class ProvisioningFailedError(ProvisioningError):
    """Raised when the provider reports a terminal FAILED state."""

    def __init__(self, message: str, state: ProvisioningState) -> None:
        super().__init__(message)
        self.state = state


class ProvisioningTimeoutError(ProvisioningError):
    """Raised when polling hits its ceiling before a terminal state."""

    def __init__(self, message: str, last_state: Optional[ProvisioningState] = None) -> None:
        super().__init__(message)
        self.last_state = last_state


class ResourceConflictError(ProvisioningError):
    """Raised when a conflicting resource holds the natural key.

    Attributes:
        rollback: Outcome of restoring the previous resource, when a
            replacement was attempted
    """

    def __init__(self, message: str, rollback: RollbackOutcome = RollbackOutcome.NOT_REQUIRED) -> None:
        super().__init__(message)
        self.rollback = rollback


@dataclass(frozen=True)
class PollSettings:
    """Poll loop bounds.

    Attributes:
        interval_seconds: Fixed wait between status queries
        max_attempts: Maximum number of status queries
        max_wait_seconds: Wall-clock ceiling across the whole loop
    """

    interval_seconds: float = 30.0
    max_attempts: int = 30
    max_wait_seconds: float = 900.0


@dataclass(frozen=True)
class ProvisioningResult:
    """Outcome of an idempotent provisioning call.

    Attributes:
        changed: True when mutating calls were made
        message: Human-readable status
        resource_id: Identifier of the resulting resource, if any
        dry_run: True when no mutating call was allowed
    """

    changed: bool
    message: str
    resource_id: Optional[str] = None
    dry_run: bool = False


def generate_dry_run_response(module_name: str, operation: str, message: str) -> str:
    """Format the status line returned instead of mutating in dry-run mode."""
    return (
        f"[DRY-RUN]: {module_name} {operation} "
        f"(no actual changes were made)\nStatus: {message}"
    )


def dry_run_failure(
    module_name: str,
    operation: str,
    error: Exception,
    resource_id: Optional[str] = None,
) -> ProvisioningResult:
    """Report the error a live run would raise as a dry-run result."""
    return ProvisioningResult(
        changed=False,
        message=generate_dry_run_response(module_name, operation, f"Will experience {error}"),
        resource_id=resource_id,
        dry_run=True,
    )


def poll_until_terminal(
    query: Callable[[], ProvisioningState],
    settings: PollSettings,
    description: str = "resource",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProvisioningState:
    """Query a creation's status until it is terminal.

    Args:
        query: Returns the current ProvisioningState
        settings: Interval and ceilings of the loop
        description: Resource description for messages
        sleep: Sleep function, replaceable in tests
        clock: Monotonic clock, replaceable in tests

    Returns:
        The SUCCEEDED state

    Raises:
        ProvisioningFailedError: When the provider reports FAILED
        ProvisioningTimeoutError: When a ceiling is reached first
    """
    started = clock()
    attempts = 0
    state: Optional[ProvisioningState] = None

    while True:
        state = query()
        attempts += 1

        if state.status is ProvisioningStatus.SUCCEEDED:
            return state
        if state.status is ProvisioningStatus.FAILED:
            raise ProvisioningFailedError(
                f"{description} creation is currently in FAILED state with "
                f"{state.reason or NO_REASON_PROVIDED} error",
                state,
            )

        elapsed = clock() - started
        if attempts >= settings.max_attempts or elapsed + settings.interval_seconds > settings.max_wait_seconds:
            raise ProvisioningTimeoutError(
                f"{description} creation did not complete after {attempts} checks "
                f"in {elapsed:.0f} seconds (last status {state.status.value})",
                state,
            )

        logger.info(
            f"{description} creation is {state.status.value}, "
            f"checking again in {settings.interval_seconds:.0f} seconds"
        )
        sleep(settings.interval_seconds)
