"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.conversion_service import ConversionService


class Settings(BaseSettings):
    """Application settings loaded from environment or .env.

    Credentials are only ever read from here; nothing secret lives in
    source and nothing here is logged.
    """

    BACKEND_CORS_ORIGINS: str = "*"

    # Meta Conversions API
    META_PIXEL_ID: Optional[str] = None
    META_CAPI_ACCESS_TOKEN: Optional[str] = None
    META_GRAPH_API_VERSION: str = "v20.0"
    META_GRAPH_BASE_URL: str = "https://graph.facebook.com"
    # Applied when the browser does not send its own test code
    META_CAPI_TEST_EVENT_CODE: Optional[str] = None

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = None

    # Applies to both the Stripe lookup and the CAPI submission
    OUTBOUND_TIMEOUT_SECONDS: float = 10.0

    # Optional inspection endpoint that receives a copy of every envelope
    CAPI_MIRROR_URL: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_conversion_service(settings: Settings = Depends(get_settings)) -> ConversionService:
    """Build a request-scoped conversion service from the settings.

    Missing credentials are not checked here: body validation errors take
    precedence and are reported first.
    """
    return ConversionService(
        pixel_id=settings.META_PIXEL_ID,
        access_token=settings.META_CAPI_ACCESS_TOKEN,
        stripe_secret_key=settings.STRIPE_SECRET_KEY,
        graph_api_version=settings.META_GRAPH_API_VERSION,
        graph_base_url=settings.META_GRAPH_BASE_URL,
        default_test_event_code=settings.META_CAPI_TEST_EVENT_CODE,
        timeout=settings.OUTBOUND_TIMEOUT_SECONDS,
        mirror_url=settings.CAPI_MIRROR_URL,
    )
