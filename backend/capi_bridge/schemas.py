"""Pydantic schemas for request/response payloads.

Request bodies come from browser scripts that historically sent both
camelCase and snake_case keys, so every field accepts either spelling.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class ClientAttribution(BaseModel):
    """Browser attribution fields shared by every event flow.

    All fields are optional: anonymous and cookie-less visits are common.
    """

    fbclid: Optional[str] = Field(None, description="Facebook click id from the landing URL")
    fbc: Optional[str] = Field(None, description="_fbc click cookie")
    fbp: Optional[str] = Field(None, description="_fbp browser cookie")
    client_user_agent: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("clientUserAgent", "client_user_agent"),
        description="Browser user agent",
    )
    source_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("sourceUrl", "source_url", "event_source_url"),
        description="Page URL where the event happened",
    )
    test_event_code: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("testEventCode", "test_event_code"),
        description="Events Manager test code",
    )
    event_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("eventId", "event_id"),
        description="Dedup id shared with the browser pixel",
    )

    model_config = {"populate_by_name": True, "extra": "ignore"}


class PurchaseRequest(ClientAttribution):
    """Purchase flow: amounts and customer come from the Stripe session."""

    session_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("sessionId", "session_id"),
        description="Stripe Checkout Session id",
    )

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
        "json_schema_extra": {
            "example": {
                "sessionId": "cs_test_a1b2c3",
                "fbc": "fb.1.1719830400000.AbCdEf",
                "fbp": "fb.1.1719830400000.1234567890",
                "clientUserAgent": "Mozilla/5.0",
                "sourceUrl": "https://shop.example.com/thank-you",
            }
        },
    }


class ContactRequest(ClientAttribution):
    """Click, outbound click and lead flows: PII supplied by the browser."""

    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "first_name", "firstName"))


class CustomEventRequest(ClientAttribution):
    """A browser-reported event with its own name, price and currency."""

    event_name: Optional[str] = Field(None, validation_alias=AliasChoices("eventName", "event_name"))
    price: Optional[Any] = Field(None, description="Numeric value, number or numeric string")
    currency: Optional[str] = None
    product_name: Optional[str] = Field(None, validation_alias=AliasChoices("productName", "product_name"))


class SubmissionResponse(BaseModel):
    """Result of forwarding an event to Meta."""

    success: bool
    message: str
    facebookResponse: Optional[Any] = None
    status: Optional[int] = None


class ErrorResponse(BaseModel):
    error: str


class PaymentStatusResponse(BaseModel):
    message: str
    sessionId: str
    amountTotal: Optional[int] = None
    currency: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])
