"""Conversion endpoints called by browser scripts.

WHAT:
    Receives purchase, click, outbound click, lead and generic events from
    the storefront, and forwards them to Meta CAPI through ConversionService.
    Also exposes a payload logging echo and a payment status check.

WHY:
    The storefront runs on a different host, so every route here is called
    cross-origin. CORS for the /api prefix is handled by the middleware in
    capi_bridge/main.py, including the OPTIONS preflight.

REFERENCES:
    - capi_bridge/services/conversion_service.py
    - https://developers.facebook.com/docs/marketing-api/conversions-api
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from capi_bridge.deps import get_conversion_service
from capi_bridge.schemas import ErrorResponse, PaymentStatusResponse, SubmissionResponse
from capi_bridge.services.conversion_service import ConversionService, EventKind, parse_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Conversions"])

# Validation, lookup and configuration failures render as {"error": ...}
ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed or incomplete request"},
    404: {"model": ErrorResponse, "description": "Checkout session not found"},
    500: {"model": ErrorResponse, "description": "Server misconfiguration or unexpected error"},
}


async def _relay(kind: EventKind, request: Request, service: ConversionService) -> dict:
    raw_body = await request.body()
    logger.debug(f"[CONVERSIONS] Received {kind.value} request ({len(raw_body)} bytes)")
    return await service.process(kind, raw_body, request.headers)


@router.post("/purchase", response_model=SubmissionResponse, responses=ERROR_RESPONSES)
async def report_purchase(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
):
    """Report a completed Stripe Checkout purchase.

    Body: {sessionId, fbclid, fbc, fbp, clientUserAgent, sourceUrl, testEventCode, eventId}
    """
    return await _relay(EventKind.PURCHASE, request, service)


@router.post("/click", response_model=SubmissionResponse, responses=ERROR_RESPONSES)
async def report_click(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
):
    """Report a tracked click. Requires fbc or fbp.

    Body: {fbc, fbp, fbclid, clientUserAgent, sourceUrl, email, phone, name}
    """
    return await _relay(EventKind.CLICK, request, service)


@router.post("/outbound-click", response_model=SubmissionResponse, responses=ERROR_RESPONSES)
async def report_outbound_click(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
):
    """Report a click on a link leaving the site (sent via navigator.sendBeacon)."""
    return await _relay(EventKind.OUTBOUND_CLICK, request, service)


@router.post("/lead", response_model=SubmissionResponse, responses=ERROR_RESPONSES)
async def report_lead(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
):
    """Report a captured lead. Body: {email, phone, name|first_name, fbp, fbc, ...}"""
    return await _relay(EventKind.LEAD, request, service)


@router.post("/events", response_model=SubmissionResponse, responses=ERROR_RESPONSES)
async def report_custom_event(
    request: Request,
    service: ConversionService = Depends(get_conversion_service),
):
    """Report an event named by the browser.

    Body: {eventName, price, currency, fbp, productName}
    """
    return await _relay(EventKind.CUSTOM, request, service)


@router.post("/log", responses={400: ERROR_RESPONSES[400]})
async def log_payload(request: Request):
    """Echo endpoint used while wiring up front-end tracking scripts."""
    body = parse_body(await request.body())
    logger.info(
        "[CONVERSIONS] Logged payload",
        extra={"keys": sorted(body.keys())}
    )
    return {"message": "Data received", "data": body}


@router.get("/payment-status", response_model=PaymentStatusResponse, responses=ERROR_RESPONSES)
async def payment_status(
    session_id: Optional[str] = Query(None),
    service: ConversionService = Depends(get_conversion_service),
):
    """Confirm a Checkout session was paid (thank-you page check)."""
    return await service.payment_status(session_id)
