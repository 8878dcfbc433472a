"""Typed error conditions raised by the Granary service layer.

Callers (the API, CLI and Celery tasks) decide how each condition is
surfaced; the service layer never builds HTTP responses itself.
"""

from __future__ import annotations


class GranaryError(Exception):
    """Base class for all Granary errors."""

    status_code = 500


class ValidationError(GranaryError):
    """Raised when caller-supplied input is missing or out of range."""

    status_code = 422


class NotFoundError(GranaryError):
    """Raised when a keyed lookup finds nothing for the caller's business."""

    status_code = 404

    def __init__(self, kind: str, key: object) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class SignalNotFound(NotFoundError):
    def __init__(self, signal_id: object) -> None:
        super().__init__("Signal", signal_id)


class FarmNotFound(NotFoundError):
    def __init__(self, farm_id: object) -> None:
        super().__init__("Farm", farm_id)


class PolicyNotFound(NotFoundError):
    def __init__(self, farm_id: object) -> None:
        super().__init__("Crop insurance policy for farm", farm_id)


class InvalidTransition(GranaryError):
    """Raised when a signal is moved out of a terminal status."""

    status_code = 409

    def __init__(self, signal_id: object, current: str, target: str) -> None:
        super().__init__(
            f"Signal {signal_id} is {current}; cannot move to {target}"
        )
        self.current = current
        self.target = target


class MarketDataUnavailable(GranaryError):
    """Raised when the market-data provider cannot supply quotes."""

    status_code = 503

    def __init__(self, message: str, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error
