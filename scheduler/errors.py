"""Exceptions raised by the scheduling package.

The web layer maps every :class:`SchedulerError` to a JSON ``{"error": ...}``
response, so ``str(exc)`` is always a message suitable for showing to the
user.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SchedulerError(Exception):
    """Base class for all scheduling errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class NotFoundError(SchedulerError):
    """A referenced school, stream, teacher or template does not exist."""

    status_code = 404


class IncompleteSetupError(SchedulerError):
    """The school lacks the teachers, streams or subjects needed to generate."""

    status_code = 422


class ValidationError(SchedulerError):
    """Stored data or a generated grid breaks an invariant."""

    status_code = 500


class TemplateConfigError(ValidationError):
    """A template row could not be turned into a usable layout."""

    status_code = 422


class AvailabilityConfigError(ValidationError):
    """A teacher's stored availability mask is malformed or does not fit the template."""

    status_code = 422


class InfeasibleScheduleError(SchedulerError):
    """No assignment satisfying the hard constraints was found for a stream."""

    status_code = 422

    def __init__(
        self,
        message: str,
        *,
        stream_id: Any = None,
        stream_name: Optional[str] = None,
        subject: Optional[str] = None,
        day: Optional[str] = None,
        period: Optional[int] = None,
        kind: Optional[str] = None,
    ):
        super().__init__(message)
        self.stream_id = stream_id
        self.stream_name = stream_name
        self.subject = subject
        self.day = day
        self.period = period
        self.kind = kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "stream_id": self.stream_id,
            "stream": self.stream_name,
            "subject": self.subject,
            "day": self.day,
            "period": self.period,
            "kind": self.kind,
        }


__all__ = [
    "SchedulerError",
    "NotFoundError",
    "IncompleteSetupError",
    "ValidationError",
    "TemplateConfigError",
    "AvailabilityConfigError",
    "InfeasibleScheduleError",
]
