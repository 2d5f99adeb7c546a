"""
Conversion Relay Exceptions
===========================

Error kinds raised while turning a browser payload into a Meta CAPI event.

Every error carries the HTTP status it maps to and a stable ``kind`` string,
so the FastAPI exception handler in ``capi_bridge/main.py`` can render it
without knowing which step failed.

RELATED FILES
-------------
- capi_bridge/services/conversion_service.py: raises validation and flow errors
- capi_bridge/services/stripe_session_service.py: SessionNotFound, PaymentNotSucceeded
- capi_bridge/services/meta_capi_service.py: UpstreamSubmissionError
- capi_bridge/main.py: renders ConversionError as JSON
"""

from typing import Any, Dict, Optional


class ConversionError(Exception):
    """
    Base exception for every conversion relay failure.

    USAGE:
        try:
            result = await service.process(EventKind.PURCHASE, raw_body, headers)
        except ConversionError as e:
            return JSONResponse(status_code=e.status_code, content=e.to_response())
    """

    kind = "ConversionError"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        """Body returned to the caller."""
        return {"error": self.message}


class MalformedJSONError(ConversionError):
    """Request body could not be parsed as a JSON object."""

    kind = "MalformedJSON"
    status_code = 400

    def __init__(self, message: str = "Invalid JSON in request body."):
        super().__init__(message)


class MissingIdentifierError(ConversionError):
    """A flow-specific identifier (sessionId, fbc/fbp) is absent."""

    kind = "MissingIdentifier"
    status_code = 400


class MissingRequiredFieldError(ConversionError):
    """A required field is absent or has the wrong type."""

    kind = "MissingRequiredField"
    status_code = 400


class InsufficientIdentifiersError(ConversionError):
    """user_data carries none of em, ph, fbp, fbc after empty values are dropped."""

    kind = "InsufficientIdentifiers"
    status_code = 400

    def __init__(
        self,
        message: str = (
            "Missing required user identifiers for Facebook CAPI "
            "(need at least one of email, phone, fbp, or fbc)."
        ),
    ):
        super().__init__(message)


class PaymentNotSucceededError(ConversionError):
    kind = "PaymentNotSucceeded"
    status_code = 400

    def __init__(self, message: str = "Payment not succeeded", payment_status: Optional[str] = None):
        super().__init__(message)
        self.payment_status = payment_status


class SessionNotFoundError(ConversionError):
    kind = "SessionNotFound"
    status_code = 404


class ServerMisconfigurationError(ConversionError):
    """
    Required credentials are absent from the settings.

    WHAT:
        Raised after request validation, before any outbound call, when the
        pixel id, access token or Stripe key is not configured.

    WHY:
        The caller cannot fix this, so it is a 500 and the message names the
        missing setting without echoing any secret value.
    """

    kind = "ServerMisconfiguration"
    status_code = 500

    def __init__(self, missing: list):
        self.missing = list(missing)
        super().__init__(
            "Server misconfiguration: missing required environment variables "
            f"({', '.join(self.missing)})."
        )


class UpstreamSubmissionError(ConversionError):
    """
    Meta CAPI answered with a non-2xx status, or could not be reached.

    The upstream status is forwarded when it is an error status; transport
    failures and odd statuses fall back to 502.
    """

    kind = "UpstreamSubmissionFailed"
    default_status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        response_body: Optional[Any] = None,
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.response_body = response_body
        if upstream_status is not None and upstream_status >= 400:
            self.status_code = upstream_status
        else:
            self.status_code = self.default_status_code

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "facebookResponse": self.response_body,
        }
        if self.upstream_status is not None:
            body["status"] = self.upstream_status
        return body


class UnexpectedError(ConversionError):
    kind = "UnexpectedError"
    status_code = 500
