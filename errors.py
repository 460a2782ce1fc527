"""
Error taxonomy for the matching and fulfillment core.

Every error carries the HTTP status the API answers with, so routes can let
them propagate and a single exception handler renders them.
"""


class BloodLinkError(Exception):
    status_code = 400
    kind = "error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        body = {"detail": self.message, "error": self.kind}
        if self.context:
            body["context"] = self.context
        return body


class ValidationError(BloodLinkError):
    """Malformed input, e.g. an unknown blood group."""
    status_code = 422
    kind = "validation_error"


class InvalidStateError(BloodLinkError):
    """A transition was attempted from the wrong state."""
    status_code = 409
    kind = "invalid_state"


class InsufficientUnitsError(BloodLinkError):
    status_code = 409
    kind = "insufficient_units"


class AlreadyReservedError(BloodLinkError):
    status_code = 409
    kind = "already_reserved"


class NotFoundError(BloodLinkError):
    status_code = 404
    kind = "not_found"


class AuthorizationError(BloodLinkError):
    status_code = 403
    kind = "forbidden"


class ExternalServiceError(BloodLinkError):
    """A collaborator (eligibility, distance) failed or timed out."""
    status_code = 503
    kind = "external_service"
