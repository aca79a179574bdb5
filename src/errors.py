"""
Reconcile Errors - Two-valued retry taxonomy for reconcile failures.

Every client failure is wrapped once, where it happens, into a
ReconcileError that records whether retrying can help. The top-level
pass uses that reason to decide between a delayed requeue and giving up
until the resource spec changes.
"""

import asyncio
from enum import Enum
from typing import Iterable, List, Optional

from kubernetes_asyncio.client.exceptions import ApiException

# HTTP statuses that retrying will not fix: unauthorized, forbidden,
# bad request, invalid (unprocessable) and service unavailable.
IRRECOVERABLE_STATUSES = frozenset({400, 401, 403, 422, 503})


class ErrorReason(str, Enum):
    """Reason recorded on a ReconcileError."""

    IRRECOVERABLE = "IrrecoverableError"
    RETRY_REQUIRED = "RetryRequiredError"


class ReconcileError(Exception):
    """A classified reconcile failure wrapping its original cause."""

    def __init__(self, reason: ErrorReason, message: str, cause: BaseException):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.cause = cause
        self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.message}: {self.cause}"

    def __repr__(self) -> str:
        return f"ReconcileError(reason={self.reason.value!r}, message={self.message!r})"

    @property
    def irrecoverable(self) -> bool:
        return self.reason == ErrorReason.IRRECOVERABLE


class AggregateError(Exception):
    """Several failures surfaced together, none of them discarded."""

    def __init__(self, errors: List[BaseException]):
        self.errors = errors
        super().__init__(str(self))

    def __str__(self) -> str:
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "[" + ", ".join(str(e) for e in self.errors) + "]"


def aggregate(errors: Iterable[Optional[BaseException]]) -> Optional[BaseException]:
    """
    Combine errors, dropping ``None`` entries and duplicate messages.

    Returns:
        None when nothing is left, the error itself when only one is left,
        otherwise an AggregateError.
    """
    kept: List[BaseException] = []
    seen = set()
    for err in errors:
        if err is None:
            continue
        key = str(err)
        if key in seen:
            continue
        seen.add(key)
        kept.append(err)

    if not kept:
        return None
    if len(kept) == 1:
        return kept[0]
    return AggregateError(kept)


def _format(message: str, args: tuple) -> str:
    return message % args if args else message


def new_irrecoverable_error(
    cause: Optional[BaseException], message: str, *args
) -> Optional[ReconcileError]:
    """Wrap ``cause`` as an irrecoverable error. Returns None for no cause."""
    if cause is None:
        return None
    return ReconcileError(ErrorReason.IRRECOVERABLE, _format(message, args), cause)


def new_retry_required_error(
    cause: Optional[BaseException], message: str, *args
) -> Optional[ReconcileError]:
    """Wrap ``cause`` as a retryable error. Returns None for no cause."""
    if cause is None:
        return None
    return ReconcileError(ErrorReason.RETRY_REQUIRED, _format(message, args), cause)


def is_irrecoverable_client_error(err: BaseException) -> bool:
    """Check whether a raw client failure can never succeed on retry."""
    return isinstance(err, ApiException) and err.status in IRRECOVERABLE_STATUSES


def from_client_error(
    cause: Optional[BaseException], message: str, *args
) -> Optional[ReconcileError]:
    """
    Classify a client failure.

    Unauthorized, forbidden, invalid, bad request and service unavailable
    API errors are irrecoverable. Everything else, including not found,
    conflict, timeouts and connection errors, requires a retry. An error
    that is already classified keeps its reason.

    Args:
        cause: The failure raised by the cluster client.
        message: printf-style description of the failed operation.
        *args: Arguments for ``message``.

    Returns:
        The classified ReconcileError, or None when ``cause`` is None.
    """
    if cause is None:
        return None
    if isinstance(cause, ReconcileError):
        return ReconcileError(cause.reason, _format(message, args), cause)
    if is_irrecoverable_client_error(cause):
        return new_irrecoverable_error(cause, message, *args)
    return new_retry_required_error(cause, message, *args)


def is_irrecoverable_error(err: Optional[BaseException]) -> bool:
    """
    Report whether an error, or anything it wraps, is irrecoverable.

    Follows ``__cause__`` chains and looks inside AggregateError members.
    """
    seen = set()
    stack = [err]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, ReconcileError):
            return current.irrecoverable
        if isinstance(current, AggregateError):
            stack.extend(reversed(current.errors))
            continue
        stack.append(current.__cause__)
    return False


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 404


def is_already_exists(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 409 and (
        (err.reason or "") == "AlreadyExists" or "already exists" in str(err.body or "")
    )


def is_conflict(err: BaseException) -> bool:
    return isinstance(err, ApiException) and err.status == 409


def is_timeout(err: BaseException) -> bool:
    return isinstance(err, (asyncio.TimeoutError, TimeoutError)) or (
        isinstance(err, ApiException) and err.status in (408, 504)
    )
