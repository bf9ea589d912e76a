"""
Attribution Exceptions
======================

Custom exception types for the attribution core.

WHY THIS FILE EXISTS
--------------------
The core distinguishes four failure classes:
- soft cache miss (never raised, just a miss)
- no-match (a normal outcome, never raised)
- invalid input (raised to the caller at ingestion)
- dependency failure (logged, wrapped, and degraded internally)

Only invalid input and lookups of unknown attributions reach callers.

RELATED FILES
-------------
- clickcredit/services/attribution/service.py: Raises InvalidEventError, AttributionNotFoundError
- clickcredit/services/attribution/correlation_engine.py: Wraps store failures in DependencyError
- clickcredit/routers/attribution.py: Maps these onto HTTP status codes
"""

from typing import Optional


class AttributionError(Exception):
    """
    Base exception for all attribution core errors.

    USAGE:
        try:
            service.submit_feedback(attribution_id, confirmed=True)
        except AttributionError as e:
            return {"error": e.to_user_message()}
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_user_message(self) -> str:
        return self.message


class InvalidEventError(AttributionError, ValueError):
    """
    Malformed click or sale record.

    WHAT:
        Raised when a required identifier or timestamp is missing, or a
        field has an impossible value (negative amount).
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_user_message(self) -> str:
        if self.field:
            return f"Invalid event: {self.message} (field: {self.field})"
        return f"Invalid event: {self.message}"


class AttributionNotFoundError(AttributionError):
    """Feedback or override referenced an unknown attribution."""

    def __init__(self, attribution_id: str):
        super().__init__(f"Attribution {attribution_id} not found")
        self.attribution_id = attribution_id


class InvalidTransitionError(AttributionError):
    """
    Requested change is not allowed for the attribution's current state.

    WHAT:
        Feedback on a CONFIRMED/REJECTED attribution, an out-of-range revenue
        share, or reassignment to a click that is already claimed.
    """


class DependencyError(AttributionError):
    """
    Durable store or shared cache failed or timed out.

    WHY:
        Lets the engine log which dependency degraded without leaking
        driver-specific exception types.
    """

    def __init__(self, message: str, dependency: str):
        super().__init__(message)
        self.dependency = dependency

    def to_user_message(self) -> str:
        return f"{self.dependency} is temporarily unavailable"
