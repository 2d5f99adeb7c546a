"""Conversion event normalizer.

WHAT:
    Pure functions that turn a payment session plus browser attribution into
    a Meta Conversions API event: PII hashing, client IP resolution, value
    resolution, user_data / custom_data construction and event assembly.

WHY:
    Meta attributes server-side events only when identity signals are present
    and well formed. Empty values must be omitted rather than sent as null or
    "", and PII must leave the system hashed.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api/parameters
    - capi_bridge/services/conversion_service.py (caller)
"""

import hashlib
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from capi_bridge.exceptions import InsufficientIdentifiersError

ACTION_SOURCE = "website"
CONTENT_TYPE_PRODUCT = "product"

# At least one of these must survive omit_empty() for Meta to attribute the event
IDENTITY_KEYS = ("em", "ph", "fbp", "fbc")

MINOR_UNITS_PER_MAJOR = Decimal(100)


@dataclass
class LineItem:
    """One purchased line, amounts in the currency's minor units."""

    product_id: Optional[str]
    quantity: int = 0
    unit_amount: Optional[int] = None


@dataclass
class PaymentSession:
    """Checkout session as returned by the payment provider."""

    id: str
    payment_status: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    line_items: List[LineItem] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.payment_status == "succeeded"


def omit_empty(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None or an empty string."""
    return {key: value for key, value in mapping.items() if value is not None and value != ""}


def hash_pii(value: Optional[str]) -> Optional[str]:
    """SHA-256 hex digest of the trimmed, lowercased value.

    Returns None for None, empty or whitespace-only input so the key is
    omitted instead of sent as a hash of "".
    """
    if value is None:
        return None
    normalized = value.strip().lower()
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive, Starlette Headers are not
        value = headers.get(name.title())
    return value


def resolve_client_ip(headers: Mapping[str, str]) -> Optional[str]:
    """Original client IP from proxy headers.

    The first entry of x-forwarded-for wins (later entries are proxies),
    then x-real-ip, then None.
    """
    forwarded_for = _header(headers, "x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first

    real_ip = _header(headers, "x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return None


def minor_to_major(amount: int) -> Decimal:
    return Decimal(amount) / MINOR_UNITS_PER_MAJOR


def resolve_value(session: PaymentSession) -> Optional[Decimal]:
    """Purchase value in major units.

    Uses the session total when present, otherwise the sum of line item
    amounts. Returns None when neither is available; callers omit the
    value instead of sending 0.
    """
    if session.amount_total is not None:
        return minor_to_major(session.amount_total)

    priced = [item for item in session.line_items if item.unit_amount is not None]
    if not priced:
        return None

    total_minor = sum(item.unit_amount * (item.quantity or 0) for item in priced)
    return minor_to_major(total_minor)


def build_user_data(
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    phone: Optional[str] = None,
    fbc: Optional[str] = None,
    fbp: Optional[str] = None,
    fbclid: Optional[str] = None,
    client_ip: Optional[str] = None,
    client_user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the user_data block with hashed PII and raw browser identifiers.

    Raises:
        InsufficientIdentifiersError: when none of em, ph, fbp, fbc remains
    """
    user_data = omit_empty({
        "em": hash_pii(email),
        "fn": hash_pii(name),
        "ph": hash_pii(phone),
        "fbc": fbc,
        "fbp": fbp,
        "fbclid": fbclid,
        "client_ip_address": client_ip,
        "client_user_agent": client_user_agent,
    })

    if not any(key in user_data for key in IDENTITY_KEYS):
        raise InsufficientIdentifiersError()

    return user_data


def build_custom_data(session: PaymentSession) -> Dict[str, Any]:
    """Build the purchase custom_data block from a payment session."""
    contents = []
    content_ids = []
    for item in session.line_items:
        if not item.product_id:
            continue
        contents.append(omit_empty({
            "id": item.product_id,
            "quantity": item.quantity,
            "item_price": float(minor_to_major(item.unit_amount)) if item.unit_amount is not None else None,
        }))
        content_ids.append(item.product_id)

    value = resolve_value(session)

    return omit_empty({
        "currency": session.currency.upper() if session.currency else None,
        "value": float(value) if value is not None else None,
        "contents": contents,
        "content_type": CONTENT_TYPE_PRODUCT,
        "content_ids": content_ids,
        "num_items": sum(item.quantity or 0 for item in session.line_items),
    })


def build_product_custom_data(
    currency: Optional[str],
    value: Optional[Decimal],
    product_name: Optional[str] = None,
) -> Dict[str, Any]:
    """custom_data for a single-product event reported directly by the browser."""
    return omit_empty({
        "currency": currency.strip().upper() if currency else None,
        "value": float(value) if value is not None else None,
        "content_type": CONTENT_TYPE_PRODUCT,
        "content_name": product_name,
        "content_ids": [product_name] if product_name else None,
    })


def assemble_event(
    event_name: str,
    user_data: Dict[str, Any],
    custom_data: Optional[Dict[str, Any]] = None,
    event_source_url: Optional[str] = None,
    test_event_code: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble one CAPI event.

    event_time is taken here, once, in whole Unix seconds. Optional keys
    are left out entirely when unset; a null test_event_code would be read
    as a test-mode flag.
    """
    event: Dict[str, Any] = {
        "event_name": event_name,
        "event_time": int(time.time()),
        "action_source": ACTION_SOURCE,
        "user_data": user_data,
    }

    if event_source_url:
        event["event_source_url"] = event_source_url

    if custom_data:
        event["custom_data"] = custom_data

    if test_event_code:
        event["test_event_code"] = test_event_code

    if event_id:
        event["event_id"] = event_id

    return event


def build_envelope(events: List[Dict[str, Any]], test_event_code: Optional[str] = None) -> Dict[str, Any]:
    """Request body for the CAPI events endpoint."""
    envelope: Dict[str, Any] = {"data": events}
    if test_event_code:
        envelope["test_event_code"] = test_event_code
    return envelope
