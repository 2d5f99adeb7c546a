"""Stripe Checkout session lookup.

WHAT:
    Retrieves a Checkout Session (with its payment intent and line items
    expanded) and maps it onto a PaymentSession.

WHY:
    Purchase events are only reported for payments Stripe confirms as
    succeeded. Amounts, currency, customer details and products come from
    Stripe rather than from the browser, which cannot be trusted with them.

HOW:
    The Stripe SDK is synchronous, so the call runs in a worker thread via
    asyncio.to_thread to keep the event loop free.

REFERENCES:
    - https://docs.stripe.com/api/checkout/sessions/retrieve
"""

import asyncio
import logging
from typing import Any, List, Optional

import stripe

from capi_bridge.exceptions import (
    PaymentNotSucceededError,
    SessionNotFoundError,
    UnexpectedError,
)
from capi_bridge.services.conversion_normalizer import LineItem, PaymentSession

logger = logging.getLogger(__name__)

SESSION_EXPAND = ["payment_intent", "line_items"]


def _field(obj: Any, key: str) -> Any:
    """Read a key from a (converted) session dict, tolerating None."""
    if obj is None:
        return None
    if isinstance(obj, str):
        # Unexpanded reference (an id), no nested fields available
        return None
    return obj.get(key)


def _payment_status(session: Any) -> str:
    """Payment intent status, falling back to the session's payment_status.

    Sessions without a payment intent (e.g. fully discounted orders) report
    payment_status "paid" instead.
    """
    intent_status = _field(_field(session, "payment_intent"), "status")
    if intent_status:
        return intent_status
    if _field(session, "payment_status") == "paid":
        return "succeeded"
    return _field(session, "payment_status") or "unknown"


def _line_items(session: Any) -> List[LineItem]:
    items = []
    for item in _field(_field(session, "line_items"), "data") or []:
        price = _field(item, "price")
        product = _field(price, "product")
        if product is not None and not isinstance(product, str):
            product = _field(product, "id")
        items.append(LineItem(
            product_id=product,
            quantity=_field(item, "quantity") or 0,
            unit_amount=_field(price, "unit_amount"),
        ))
    return items


def to_payment_session(session: Any) -> PaymentSession:
    """Map a Stripe Checkout Session onto a PaymentSession.

    Accepts a StripeObject or a plain dict. Recent stripe releases no longer
    make StripeObject a dict subclass, so it is converted with to_dict()
    (recursive) before any field is read.
    """
    if hasattr(session, "to_dict"):
        session = session.to_dict()
    customer = _field(session, "customer_details")
    currency = _field(session, "currency")
    return PaymentSession(
        id=_field(session, "id"),
        payment_status=_payment_status(session),
        customer_email=_field(customer, "email"),
        customer_name=_field(customer, "name"),
        customer_phone=_field(customer, "phone"),
        amount_total=_field(session, "amount_total"),
        currency=currency.upper() if currency else None,
        line_items=_line_items(session),
    )


class StripeSessionService:
    """Looks up Checkout sessions with a restricted or secret Stripe key.

    Usage:
        lookup = StripeSessionService(secret_key="sk_live_...")
        session = await lookup.get_paid_session("cs_test_123")
    """

    def __init__(self, secret_key: str, timeout: Optional[float] = None):
        self.secret_key = secret_key
        self.timeout = timeout

    def _retrieve(self, session_id: str) -> Any:
        return stripe.checkout.Session.retrieve(
            session_id,
            api_key=self.secret_key,
            expand=SESSION_EXPAND,
        )

    async def get_session(self, session_id: str) -> PaymentSession:
        """Retrieve and map a session regardless of its payment status.

        Raises:
            SessionNotFoundError: Stripe does not know the session id
            UnexpectedError: Any other Stripe failure (auth, network, timeout)
        """
        try:
            retrieve = asyncio.to_thread(self._retrieve, session_id)
            if self.timeout:
                raw = await asyncio.wait_for(retrieve, timeout=self.timeout)
            else:
                raw = await retrieve
        except stripe.InvalidRequestError as e:
            logger.warning(
                f"[STRIPE] Session lookup rejected: {e.code or 'invalid_request'}",
                extra={"session_id": session_id}
            )
            raise SessionNotFoundError(f"Checkout session not found: {session_id}") from e
        except stripe.StripeError as e:
            logger.error(f"[STRIPE] Session lookup failed: {e.__class__.__name__}")
            raise UnexpectedError("Failed to retrieve payment session") from e
        except asyncio.TimeoutError as e:
            logger.error(f"[STRIPE] Session lookup timed out after {self.timeout}s")
            raise UnexpectedError("Timed out retrieving payment session") from e

        session = to_payment_session(raw)
        logger.info(
            "[STRIPE] Session retrieved",
            extra={
                "session_id": session.id,
                "payment_status": session.payment_status,
                "line_items": len(session.line_items),
            }
        )
        return session

    async def get_paid_session(self, session_id: str) -> PaymentSession:
        """Retrieve a session and require its payment to have succeeded.

        Raises:
            PaymentNotSucceededError: payment status is anything but succeeded
        """
        session = await self.get_session(session_id)
        if not session.succeeded:
            logger.info(
                f"[STRIPE] Payment not succeeded: {session.payment_status}",
                extra={"session_id": session.id}
            )
            raise PaymentNotSucceededError(payment_status=session.payment_status)
        return session
