# dispatch_errors.py
"""Exceptions raised across the dispatcher / service boundary."""

from __future__ import annotations


class DispatchError(Exception):
    """Base class for every error this package raises on purpose."""

    kind: str = "dispatch error"


class RequestValidationError(DispatchError):
    """Caller supplied malformed input; raised before any dispatcher work."""

    kind = "invalid request"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class ComputationFailed(DispatchError):
    """Generic failure signal for the exposed operations. Carries no partial result."""

    kind = "computation failed"


class DispatcherNotReady(DispatchError):
    """A Q-learning dispatcher was asked for a recommendation before training."""

    kind = "not ready"
