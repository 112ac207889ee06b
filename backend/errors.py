# backend/errors.py
"""Typed failures shared by the API and the client library."""
from typing import Any, Optional


class TradeError(Exception):
    """Base class for every failure the trade API reports to callers."""
    status_code: int = 400
    code: str = "trade_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "error": self.code}
        if self.details:
            body["context"] = self.details
        return body


class NotFound(TradeError):
    status_code = 404
    code = "not_found"


class Unauthorized(TradeError):
    """Acting user is not allowed to perform the action."""
    status_code = 403
    code = "unauthorized"


class Forbidden(Unauthorized):
    """Requesting user is not a party of the trade or offer."""
    code = "forbidden"


class InvalidTransition(TradeError):
    """Action is not legal from the current state, including lost races."""
    status_code = 409
    code = "invalid_transition"


class AlreadyTerminal(TradeError):
    status_code = 409
    code = "already_terminal"


class ValidationError(TradeError):
    """Malformed payload (bad destination address, non-positive amount...)."""
    status_code = 422
    code = "validation_error"


class DuplicateOffer(ValidationError):
    status_code = 409
    code = "duplicate_offer"


class ExternalServiceDegraded(TradeError):
    """The item-transfer system is slow or unavailable."""
    status_code = 503
    code = "external_service_degraded"


ERRORS_BY_CODE: dict[str, type[TradeError]] = {
    cls.code: cls
    for cls in (
        TradeError,
        NotFound,
        Unauthorized,
        Forbidden,
        InvalidTransition,
        AlreadyTerminal,
        ValidationError,
        DuplicateOffer,
        ExternalServiceDegraded,
    )
}


def error_from_response(status_code: int, body: Optional[dict[str, Any]]) -> TradeError:
    """Rebuild a typed error from an API error response."""
    body = body or {}
    detail = body.get("detail")
    code = body.get("error")

    if code in ERRORS_BY_CODE:
        cls = ERRORS_BY_CODE[code]
    elif status_code == 404:
        cls = NotFound
    elif status_code == 403:
        cls = Unauthorized
    elif status_code == 409:
        cls = InvalidTransition
    elif status_code == 422:
        cls = ValidationError
    elif status_code == 503:
        cls = ExternalServiceDegraded
    else:
        cls = TradeError

    # FastAPI request validation returns a list of problems as detail
    if not isinstance(detail, str):
        detail = str(detail) if detail else f"Request failed with status {status_code}"

    return cls(detail, **(body.get("context") or {}))
