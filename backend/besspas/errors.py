"""Error taxonomy shared by the ledger, lifecycle and verification layers.

Every error carries the HTTP status it maps to, so the API layer can render
it without re-classifying. ``step`` names the operation stage that failed
for administrative batch/ledger calls.
"""
from typing import Optional


class BessError(Exception):
    status_code = 500

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def to_dict(self) -> dict:
        return {'error': self.message, 'step': self.step}


class ValidationError(BessError):
    status_code = 400


class MalformedPayloadError(ValidationError):
    pass


class NotFoundError(BessError):
    status_code = 404


class PermissionDeniedError(BessError):
    status_code = 403


class InvalidTransitionError(BessError):
    status_code = 409


class IntegrityViolation(BessError):
    """High-severity integrity problem that needs manual review."""
    status_code = 500


class DuplicateSerialError(IntegrityViolation):
    pass


class ChainIntegrityError(IntegrityViolation):
    pass


class LedgerAppendError(BessError):
    status_code = 503
