"""Meta Conversions API (CAPI) Service.

WHAT:
    Sends assembled server-side conversion events to Meta's events endpoint
    and optionally mirrors the same envelope to an inspection URL.

WHY:
    - Server-side events survive ad blockers and iOS 14+ tracking limits
    - Deduplication with the browser pixel happens on Meta's side via event_id
    - Errors returned by Meta must reach the caller intact, not as a generic 500

HOW:
    Uses Meta's Conversions API endpoint:
    POST https://graph.facebook.com/{version}/{pixel_id}/events?access_token=...

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - capi_bridge/services/conversion_normalizer.py (event construction)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from capi_bridge.exceptions import UpstreamSubmissionError
from capi_bridge.services.conversion_normalizer import build_envelope

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_BASE_URL = "https://graph.facebook.com"
DEFAULT_GRAPH_API_VERSION = "v20.0"
DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass
class CAPIResponse:
    """Acknowledgment from Meta. body is None for empty (204) responses."""

    status_code: int
    body: Optional[Any] = None


def _parse_body(response: httpx.Response) -> Optional[Any]:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class MetaCAPIService:
    """Service for sending server-side events to Meta Conversions API.

    Usage:
        ```python
        service = MetaCAPIService(pixel_id="123456", access_token="token")
        result = await service.send_events([event], test_event_code="TEST123")
        ```
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = DEFAULT_GRAPH_API_VERSION,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        mirror_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize CAPI service with pixel credentials.

        Args:
            pixel_id: Meta Pixel / dataset ID
            access_token: Conversions API access token (sent as query parameter)
            api_version: Graph API version
            base_url: Graph API host
            timeout: Seconds before the outbound call is abandoned
            mirror_url: Optional URL that receives a copy of every envelope
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.timeout = timeout
        self.mirror_url = mirror_url
        self.events_url = f"{base_url.rstrip('/')}/{api_version}/{pixel_id}/events"
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def send_events(
        self,
        events: List[Dict[str, Any]],
        test_event_code: Optional[str] = None,
    ) -> CAPIResponse:
        """Send events to Meta Conversions API.

        Submission is attempted exactly once; nothing is retried or queued.

        Args:
            events: List of assembled event objects
            test_event_code: If provided, events go to Test Events in Events Manager

        Returns:
            CAPIResponse with Meta's status code and parsed body

        Raises:
            UpstreamSubmissionError: On non-2xx responses or network failures
        """
        payload = build_envelope(events, test_event_code)

        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_names": [e.get("event_name") for e in events],
                "event_ids": [e.get("event_id") for e in events],
                "test_mode": bool(test_event_code),
            }
        )

        try:
            async with self._client() as client:
                response = await client.post(
                    self.events_url,
                    params={"access_token": self.access_token},
                    json=payload,
                )
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error: {e.__class__.__name__}")
            raise UpstreamSubmissionError(f"Network error sending to Meta CAPI: {e.__class__.__name__}") from e

        body = _parse_body(response)

        if not response.is_success:
            logger.error(
                f"[META_CAPI] API error: {response.status_code}",
                extra={"response": body}
            )
            raise UpstreamSubmissionError(
                "Failed to send event to Facebook CAPI",
                upstream_status=response.status_code,
                response_body=body,
            )

        events_received = body.get("events_received") if isinstance(body, dict) else None
        logger.info(
            f"[META_CAPI] Success: {events_received if events_received is not None else len(events)} event(s) received",
            extra={
                "status_code": response.status_code,
                "fbtrace_id": body.get("fbtrace_id") if isinstance(body, dict) else None,
            }
        )

        await self._mirror(payload)

        return CAPIResponse(status_code=response.status_code, body=body)

    async def _mirror(self, payload: Dict[str, Any]) -> None:
        """POST a copy of the envelope to the mirror URL.

        The access token is never part of the envelope, so the mirror only
        sees event data. Failures of any kind, including a malformed mirror
        URL, are logged and otherwise ignored: Meta has already accepted the
        event by the time this runs.
        """
        if not self.mirror_url:
            return

        try:
            async with self._client() as client:
                response = await client.post(self.mirror_url, json=payload)
            logger.debug(f"[META_CAPI] Mirror responded {response.status_code}")
        except Exception as e:
            logger.warning(f"[META_CAPI] Mirror delivery failed: {e.__class__.__name__}")
