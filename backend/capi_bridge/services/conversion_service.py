"""Conversion flow service.

WHAT:
    Runs one browser request through the relay:
    Received -> Parsed -> Validated -> (SessionFetched) -> Normalized
    -> Submitted -> Responded.
    A single flow serves every event kind; the kind selects which fields
    are required and which custom_data shape is built.

WHY:
    Purchase, click, outbound click and lead reporting only differ in
    validation and payload shape. Keeping one flow keeps hashing, null
    filtering and error reporting identical across them.

REFERENCES:
    - capi_bridge/services/conversion_normalizer.py: payload construction
    - capi_bridge/services/stripe_session_service.py: payment lookup
    - capi_bridge/services/meta_capi_service.py: submission
    - capi_bridge/routers/conversions.py: HTTP entrypoints
"""

import json
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type

from pydantic import ValidationError

from capi_bridge.exceptions import (
    ConversionError,
    MalformedJSONError,
    MissingIdentifierError,
    MissingRequiredFieldError,
    ServerMisconfigurationError,
    UnexpectedError,
)
from capi_bridge.schemas import (
    ClientAttribution,
    ContactRequest,
    CustomEventRequest,
    PurchaseRequest,
)
from capi_bridge.services.conversion_normalizer import (
    PaymentSession,
    assemble_event,
    build_custom_data,
    build_product_custom_data,
    build_user_data,
    resolve_client_ip,
)
from capi_bridge.services.meta_capi_service import MetaCAPIService
from capi_bridge.services.stripe_session_service import StripeSessionService
from capi_bridge.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Event kinds the relay accepts. Values are the CAPI event names."""

    PURCHASE = "Purchase"
    CLICK = "Click"
    OUTBOUND_CLICK = "OutboundClick"
    LEAD = "Lead"
    CUSTOM = "Custom"


@dataclass(frozen=True)
class EventPolicy:
    request_model: Type[ClientAttribution]
    requires_session: bool = False
    requires_browser_id: bool = False


EVENT_POLICIES: Dict[EventKind, EventPolicy] = {
    EventKind.PURCHASE: EventPolicy(PurchaseRequest, requires_session=True),
    EventKind.CLICK: EventPolicy(ContactRequest, requires_browser_id=True),
    EventKind.OUTBOUND_CLICK: EventPolicy(ContactRequest, requires_browser_id=True),
    EventKind.LEAD: EventPolicy(ContactRequest),
    EventKind.CUSTOM: EventPolicy(CustomEventRequest),
}


def _present(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def parse_body(raw_body: bytes) -> Dict[str, Any]:
    """Parse a raw request body into a JSON object.

    Raises:
        MalformedJSONError: body is empty, not JSON, or not an object
    """
    try:
        body = json.loads(raw_body)
    except ValueError as e:
        raise MalformedJSONError() from e

    if not isinstance(body, dict):
        raise MalformedJSONError("Request body must be a JSON object.")
    return body


def parse_price(price: Any) -> Decimal:
    """Parse a numeric price sent as a number or numeric string."""
    if price is None or isinstance(price, bool) or (isinstance(price, str) and not price.strip()):
        raise MissingRequiredFieldError("Missing required data: price")
    try:
        value = Decimal(str(price).strip())
    except InvalidOperation as e:
        raise MissingRequiredFieldError("Price is not a valid number") from e
    # Values beyond float range would serialize as inf, which JSON rejects
    if not value.is_finite() or not math.isfinite(float(value)):
        raise MissingRequiredFieldError("Price is not a valid number")
    return value


def validate_request(kind: EventKind, body: Dict[str, Any]) -> ClientAttribution:
    """Validate a parsed body against the policy of its event kind.

    Raises:
        MissingRequiredFieldError: wrong field types, or missing custom event fields
        MissingIdentifierError: missing sessionId (purchase) or fbc/fbp (clicks)
    """
    policy = EVENT_POLICIES[kind]

    try:
        request = policy.request_model.model_validate(body)
    except ValidationError as e:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
        raise MissingRequiredFieldError(f"Invalid fields in request body: {', '.join(fields)}") from e

    if policy.requires_session and not _present(request.session_id):
        raise MissingIdentifierError("No sessionId provided.")

    if policy.requires_browser_id and not (_present(request.fbc) or _present(request.fbp)):
        raise MissingIdentifierError("At least one of fbc or fbp is required.")

    if kind is EventKind.CUSTOM:
        if not _present(request.fbp):
            raise MissingIdentifierError("Missing required data: fbp")
        missing = [
            name for name, value in (("event_name", request.event_name), ("currency", request.currency))
            if not _present(value)
        ]
        if missing:
            raise MissingRequiredFieldError(f"Missing required data: {', '.join(missing)}")
        parse_price(request.price)

    return request


class ConversionService:
    """Validates, normalizes and forwards browser conversion events.

    Collaborators are built lazily from the configured credentials so that
    validation errors are reported before configuration errors. Tests can
    pass ready-made collaborators instead.

    Usage:
        service = ConversionService(pixel_id="123", access_token="token", stripe_secret_key="sk_...")
        result = await service.process(EventKind.PURCHASE, raw_body, request.headers)
    """

    def __init__(
        self,
        pixel_id: Optional[str] = None,
        access_token: Optional[str] = None,
        stripe_secret_key: Optional[str] = None,
        graph_api_version: str = "v20.0",
        graph_base_url: str = "https://graph.facebook.com",
        default_test_event_code: Optional[str] = None,
        timeout: float = 10.0,
        mirror_url: Optional[str] = None,
        capi_service: Optional[MetaCAPIService] = None,
        session_service: Optional[StripeSessionService] = None,
    ):
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.stripe_secret_key = stripe_secret_key
        self.graph_api_version = graph_api_version
        self.graph_base_url = graph_base_url
        self.default_test_event_code = default_test_event_code
        self.timeout = timeout
        self.mirror_url = mirror_url
        self._capi_service = capi_service
        self._session_service = session_service

        self._normalizers = {
            EventKind.PURCHASE: self._normalize_purchase,
            EventKind.CLICK: self._normalize_contact,
            EventKind.OUTBOUND_CLICK: self._normalize_contact,
            EventKind.LEAD: self._normalize_contact,
            EventKind.CUSTOM: self._normalize_custom,
        }

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _require_credentials(self, needs_capi: bool = True, needs_stripe: bool = False) -> None:
        missing = []
        if needs_capi and self._capi_service is None:
            if not self.pixel_id:
                missing.append("META_PIXEL_ID")
            if not self.access_token:
                missing.append("META_CAPI_ACCESS_TOKEN")
        if needs_stripe and self._session_service is None and not self.stripe_secret_key:
            missing.append("STRIPE_SECRET_KEY")

        if missing:
            logger.error(
                "[CONVERSIONS] Missing required configuration",
                extra={"missing": missing}
            )
            raise ServerMisconfigurationError(missing)

    @property
    def capi_service(self) -> MetaCAPIService:
        if self._capi_service is None:
            self._capi_service = MetaCAPIService(
                pixel_id=self.pixel_id,
                access_token=self.access_token,
                api_version=self.graph_api_version,
                base_url=self.graph_base_url,
                timeout=self.timeout,
                mirror_url=self.mirror_url,
            )
        return self._capi_service

    @property
    def session_service(self) -> StripeSessionService:
        if self._session_service is None:
            self._session_service = StripeSessionService(
                secret_key=self.stripe_secret_key,
                timeout=self.timeout,
            )
        return self._session_service

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def process(
        self,
        kind: EventKind,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        """Run one request through the relay and return the response body.

        Args:
            kind: Event kind selecting validation and payload shape
            raw_body: Unparsed request body
            headers: Request headers (client IP and user agent)

        Returns:
            {"success": True, "message": ..., "facebookResponse": ..., "status": ...}

        Raises:
            ConversionError: every failure, already mapped to an HTTP status
        """
        body = parse_body(raw_body)
        request = validate_request(kind, body)
        self._require_credentials(needs_capi=True, needs_stripe=EVENT_POLICIES[kind].requires_session)

        try:
            event = await self._normalizers[kind](kind, request, headers)
            result = await self.capi_service.send_events([event], event.get("test_event_code"))
        except ConversionError:
            raise
        except Exception as e:
            logger.exception(f"[CONVERSIONS] Unexpected error in {kind.value} flow")
            capture_exception(e, extra={"event_kind": kind.value})
            raise UnexpectedError("Unexpected error while processing the event") from e

        logger.info(
            f"[CONVERSIONS] {event['event_name']} event forwarded",
            extra={
                "event_kind": kind.value,
                "event_id": event.get("event_id"),
                "user_data_keys": sorted(event["user_data"].keys()),
            }
        )

        return {
            "success": True,
            "message": f"{event['event_name']} event processed and sent to Facebook",
            "facebookResponse": result.body,
            "status": result.status_code,
        }

    async def payment_status(self, session_id: Optional[str]) -> Dict[str, Any]:
        """Confirm that a checkout session was paid.

        Raises:
            MissingIdentifierError: no session id supplied
            PaymentNotSucceededError: session exists but is not paid
        """
        if not _present(session_id):
            raise MissingIdentifierError("No session ID provided.")
        self._require_credentials(needs_capi=False, needs_stripe=True)

        session = await self.session_service.get_paid_session(session_id)
        return {
            "message": "Payment successful!",
            "sessionId": session.id,
            "amountTotal": session.amount_total,
            "currency": session.currency,
        }

    # ------------------------------------------------------------------
    # Normalizers, one per payload shape
    # ------------------------------------------------------------------

    def _test_event_code(self, request: ClientAttribution) -> Optional[str]:
        return request.test_event_code or self.default_test_event_code

    @staticmethod
    def _user_agent(request: ClientAttribution, headers: Mapping[str, str]) -> Optional[str]:
        return request.client_user_agent or headers.get("user-agent")

    async def _normalize_purchase(
        self,
        kind: EventKind,
        request: PurchaseRequest,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        session: PaymentSession = await self.session_service.get_paid_session(request.session_id.strip())

        user_data = build_user_data(
            email=session.customer_email,
            name=session.customer_name,
            phone=session.customer_phone,
            fbc=request.fbc,
            fbp=request.fbp,
            fbclid=request.fbclid,
            client_ip=resolve_client_ip(headers),
            client_user_agent=self._user_agent(request, headers),
        )

        return assemble_event(
            kind.value,
            user_data=user_data,
            custom_data=build_custom_data(session),
            event_source_url=request.source_url,
            test_event_code=self._test_event_code(request),
            event_id=request.event_id or session.id,
        )

    async def _normalize_contact(
        self,
        kind: EventKind,
        request: ContactRequest,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        user_data = build_user_data(
            email=request.email,
            name=request.name,
            phone=request.phone,
            fbc=request.fbc,
            fbp=request.fbp,
            fbclid=request.fbclid,
            client_ip=resolve_client_ip(headers),
            client_user_agent=self._user_agent(request, headers),
        )

        return assemble_event(
            kind.value,
            user_data=user_data,
            event_source_url=request.source_url,
            test_event_code=self._test_event_code(request),
            event_id=request.event_id,
        )

    async def _normalize_custom(
        self,
        kind: EventKind,
        request: CustomEventRequest,
        headers: Mapping[str, str],
    ) -> Dict[str, Any]:
        user_data = build_user_data(
            fbc=request.fbc,
            fbp=request.fbp,
            fbclid=request.fbclid,
            client_ip=resolve_client_ip(headers),
            client_user_agent=self._user_agent(request, headers),
        )

        return assemble_event(
            request.event_name.strip(),
            user_data=user_data,
            custom_data=build_product_custom_data(
                request.currency,
                parse_price(request.price),
                request.product_name,
            ),
            event_source_url=request.source_url,
            test_event_code=self._test_event_code(request),
            event_id=request.event_id,
        )
