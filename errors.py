"""
Deal Errors
===========
Typed failures raised by the deal, escrow and dispute services.

Every error carries a stable machine-readable ``kind`` and a human-readable
message, and renders to the same ``{'success': False, 'error': ...}`` shape
the HTTP API returns.
"""

from typing import Any, Dict


class DealError(Exception):
    """Base class for all deal lifecycle failures"""

    kind = "DealError"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {'success': False, 'error': self.message, 'kind': self.kind}


class NotFound(DealError):
    kind = "NotFound"
    http_status = 404


class Forbidden(DealError):
    """Acting user is not a party, or the role may not request this transition"""
    kind = "Forbidden"
    http_status = 403


class InvalidTransition(DealError):
    """Target status is not reachable from the current status"""
    kind = "InvalidTransition"
    http_status = 400


class InvalidState(DealError):
    kind = "InvalidState"
    http_status = 409


class InvalidRequest(DealError):
    kind = "InvalidRequest"
    http_status = 400


class ConcurrentModification(DealError):
    """Stored status changed between read and write"""
    kind = "ConcurrentModification"
    http_status = 409


class MissingRecipientAddress(DealError):
    kind = "MissingRecipientAddress"
    http_status = 400


class LedgerUnavailable(DealError):
    kind = "LedgerUnavailable"
    http_status = 503


class LedgerTransferFailed(DealError):
    kind = "LedgerTransferFailed"
    http_status = 502


class PublishFailed(DealError):
    kind = "PublishFailed"
    http_status = 502


class VerificationInconclusive(DealError):
    kind = "VerificationInconclusive"
    http_status = 503
