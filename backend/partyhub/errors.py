"""Typed engine errors.

Every error carries a machine readable ``reason`` so clients can tell
"too late" from "already answered", and an HTTP status used by the
blueprint error handler.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    status_code = 500
    reason = 'engine_error'
    default_message = 'Engine error'

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {'error': self.message, 'reason': self.reason}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(EngineError):
    """Bad input shape or range. Not retried."""
    status_code = 400
    reason = 'validation_error'
    default_message = 'Invalid request'


class InvalidConfig(ValidationError):
    reason = 'invalid_config'
    default_message = 'Invalid round configuration'


class ConflictError(EngineError):
    """The request is well formed but conflicts with current engine state."""
    status_code = 409
    reason = 'conflict'
    default_message = 'Conflict'


class DuplicateSubmission(ConflictError):
    reason = 'duplicate_submission'
    default_message = 'Already answered this round'


class ConflictingRound(ConflictError):
    reason = 'conflicting_round'
    default_message = 'Another round is already open'


class RoundNotOpen(ConflictError):
    reason = 'round_not_open'
    default_message = 'Round is not open'


class DeadlineExceeded(ConflictError):
    reason = 'deadline_exceeded'
    default_message = 'Round deadline has passed'


class EngineBusy(ConflictError):
    reason = 'engine_busy'
    default_message = 'Engine is busy, try again'


class DrawConflict(ConflictError):
    reason = 'draw_in_progress'
    default_message = 'Another draw is in progress'


class EmptyPoolError(EngineError):
    status_code = 422
    reason = 'empty_pool'
    default_message = 'No eligible participants for the draw'


class StorageError(EngineError):
    status_code = 503
    reason = 'storage_error'
    default_message = 'Storage unavailable'


class InvariantViolation(EngineError):
    reason = 'invariant_violation'
    default_message = 'Engine invariant violated'
