"""
Progress - Typed outcome of one reconcile attempt, and error classification.

The controller converts every exception raised while reconciling into a
ProgressStatus here, which decides how the object is requeued.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional


class CloudError(Exception):
    """An error returned by the external cloud API."""

    transient = True
    reason = "CloudError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFound(CloudError):
    reason = "NotFound"


class Conflict(CloudError):
    reason = "Conflict"


class RateLimited(CloudError):
    reason = "RateLimited"


class ServiceUnavailable(CloudError):
    reason = "ServiceUnavailable"


class Forbidden(CloudError):
    transient = False
    reason = "Forbidden"


class ValidationFailed(CloudError):
    transient = False
    reason = "ValidationFailed"


class TerminalError(Exception):
    """
    An error that retrying cannot fix.

    Raised by actuators for invalid configuration; the object is not
    retried until its spec or one of its dependencies changes.
    """

    def __init__(self, message: str, reason: str = "InvalidConfiguration"):
        self.message = message
        self.reason = reason
        super().__init__(message)


class ProgressKind(Enum):
    """Outcome kinds, ordered by precedence when combined."""

    DONE = 0
    NEEDS_REFRESH = 1
    WAITING_FOR_DEPENDENCY = 2
    TRANSIENT_ERROR = 3
    TERMINAL_ERROR = 4


@dataclass(frozen=True)
class ProgressStatus:
    """Result of one reconcile attempt."""

    kind: ProgressKind
    dependency: Optional[str] = None
    reason: str = ""
    error: Optional[BaseException] = None
    requeue_after: Optional[float] = None

    @classmethod
    def done(cls) -> "ProgressStatus":
        return cls(ProgressKind.DONE)

    @classmethod
    def waiting_for_dependency(
        cls, name: str, reason: str, requeue_after: Optional[float] = None
    ) -> "ProgressStatus":
        return cls(
            ProgressKind.WAITING_FOR_DEPENDENCY,
            dependency=name,
            reason=reason,
            requeue_after=requeue_after,
        )

    @classmethod
    def needs_refresh(cls, after: Optional[float] = None) -> "ProgressStatus":
        return cls(ProgressKind.NEEDS_REFRESH, requeue_after=after)

    @classmethod
    def transient_error(cls, error: BaseException) -> "ProgressStatus":
        return cls(
            ProgressKind.TRANSIENT_ERROR,
            reason=getattr(error, "reason", type(error).__name__),
            error=error,
        )

    @classmethod
    def terminal_error(cls, error: BaseException) -> "ProgressStatus":
        return cls(
            ProgressKind.TERMINAL_ERROR,
            reason=getattr(error, "reason", type(error).__name__),
            error=error,
        )

    @property
    def is_done(self) -> bool:
        return self.kind == ProgressKind.DONE

    @property
    def is_waiting(self) -> bool:
        return self.kind == ProgressKind.WAITING_FOR_DEPENDENCY

    @property
    def needs_refresh_now(self) -> bool:
        return self.kind == ProgressKind.NEEDS_REFRESH

    @property
    def is_error(self) -> bool:
        return self.kind in (ProgressKind.TRANSIENT_ERROR, ProgressKind.TERMINAL_ERROR)

    @property
    def message(self) -> str:
        if self.error is not None:
            return str(self.error)
        if self.kind == ProgressKind.WAITING_FOR_DEPENDENCY:
            return f"Waiting for {self.dependency}: {self.reason}"
        return ""


def combine(statuses: Iterable[Optional[ProgressStatus]]) -> ProgressStatus:
    """
    Combine several outcomes into the one that governs requeueing.

    The most severe kind wins; among NeedsRefresh results, an immediate
    refresh wins over a delayed one.
    """
    result = ProgressStatus.done()
    for status in statuses:
        if status is None:
            continue
        if status.kind.value > result.kind.value:
            result = status
        elif (
            status.kind == ProgressKind.NEEDS_REFRESH
            and result.kind == ProgressKind.NEEDS_REFRESH
            and (status.requeue_after or 0) < (result.requeue_after or 0)
        ):
            result = status
    return result


def classify_error(error: BaseException) -> ProgressStatus:
    """
    Map an exception to a transient or terminal outcome.

    Unknown exceptions are treated as transient so they are retried with
    backoff rather than silently abandoned.
    """
    if isinstance(error, TerminalError):
        return ProgressStatus.terminal_error(error)
    if isinstance(error, CloudError):
        if error.transient:
            return ProgressStatus.transient_error(error)
        return ProgressStatus.terminal_error(error)
    return ProgressStatus.transient_error(error)
