"""Domain error taxonomy.

Every error raised by the posting core, the payment workflow and the gateway
adapter derives from :class:`PawnshopError`.  Each class carries a ``kind``
(machine-readable, stable across releases) and the HTTP status the API layer
answers with.  Routers never translate these by hand; the exception handler
registered in ``pawnshop.main`` renders them into the response envelope.

    PawnshopError
    +-- NotFound                  404
    +-- ValidationFailed          400
    |   +-- SignMismatch          400
    +-- DuplicateKey              409
    |   +-- AlreadyPosted         409
    +-- InvalidTransition         409
    +-- InvalidPhone              400
    +-- UnsupportedForProvider    400
    +-- PollUrlMissing            400
    +-- GatewayRejected           400
    +-- GatewayUnreachable        502
    +-- PermissionDenied          403
    +-- IdCollision               500
    +-- Internal                  500
"""

from typing import Any


class PawnshopError(Exception):
    """Base class for all domain errors."""

    kind: str = "internal"
    status_code: int = 500

    def __init__(self, message: str, *, errors: list[Any] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors

    def to_envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "message": self.message,
            "status": self.status_code,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


class NotFound(PawnshopError):
    kind = "not_found"
    status_code = 404


class ValidationFailed(PawnshopError):
    kind = "validation_failed"
    status_code = 400


class SignMismatch(ValidationFailed):
    """A journal amount carries the wrong sign for its category."""

    kind = "sign_mismatch"


class DuplicateKey(PawnshopError):
    kind = "duplicate_key"
    status_code = 409


class AlreadyPosted(DuplicateKey):
    """The business event has already contributed its posting set."""

    kind = "already_posted"


class InvalidTransition(PawnshopError):
    kind = "invalid_transition"
    status_code = 409


class InvalidPhone(PawnshopError):
    kind = "invalid_phone"
    status_code = 400


class UnsupportedForProvider(PawnshopError):
    kind = "unsupported_for_provider"
    status_code = 400


class PollUrlMissing(PawnshopError):
    kind = "poll_url_missing"
    status_code = 400


class GatewayRejected(PawnshopError):
    kind = "gateway_rejected"
    status_code = 400


class GatewayUnreachable(PawnshopError):
    kind = "gateway_unreachable"
    status_code = 502


class PermissionDenied(PawnshopError):
    kind = "permission_denied"
    status_code = 403


class IdCollision(PawnshopError):
    """A business identifier kept colliding after the configured attempts."""

    kind = "id_collision"
    status_code = 500


class Internal(PawnshopError):
    kind = "internal"
    status_code = 500
