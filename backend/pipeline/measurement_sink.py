"""
Measurement Sink
================
HTTP client for the analytics collection endpoint (GA4 Measurement
Protocol). One OutboundEvent per request; the delivery queue owns retries.

Response classification:
    2xx                      -> delivered
    429                      -> TransientDeliveryError(retry_after=...)
    other 4xx                -> PermanentDeliveryError
    5xx / timeout / network  -> TransientDeliveryError

pip install httpx structlog
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
import structlog

from pipeline.errors import PermanentDeliveryError, TransientDeliveryError
from schemas.event_definitions import OutboundEvent

COLLECT_PATH = "/mp/collect"
DEBUG_COLLECT_PATH = "/debug/mp/collect"


class IEventSink(ABC):
    """Anything the delivery queue can deliver to."""

    @abstractmethod
    async def send(self, event: OutboundEvent) -> None:
        """Deliver or raise a DeliveryError subclass."""
        pass

    async def close(self) -> None:
        pass


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class MeasurementProtocolSink(IEventSink):

    def __init__(
        self,
        endpoint: str,
        measurement_id: str,
        api_secret: str,
        debug_mode: bool = False,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not measurement_id:
            raise ValueError("GA4 Measurement ID is required for the analytics sink")
        if not api_secret:
            raise ValueError("GA4 API Secret is required for the analytics sink")

        self.endpoint = endpoint.rstrip("/")
        self.debug_mode = debug_mode
        self._params = {"measurement_id": measurement_id, "api_secret": api_secret}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None
        self._logger = structlog.get_logger().bind(component="measurement_sink")

    @property
    def collect_url(self) -> str:
        path = DEBUG_COLLECT_PATH if self.debug_mode else COLLECT_PATH
        return f"{self.endpoint}{path}"

    async def _post(self, url: str, body: Dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(url, params=self._params, json=body)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"sink timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"sink unreachable: {e}") from e

    async def send(self, event: OutboundEvent) -> None:
        response = await self._post(self.collect_url, event.to_sink_payload())
        status = response.status_code

        if 200 <= status < 300:
            if self.debug_mode:
                self._logger.debug("sink_debug_response", event_name=event.name, body=response.text)
            return

        if status == 429:
            raise TransientDeliveryError(
                "sink rate limited",
                status_code=status,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if 400 <= status < 500:
            raise PermanentDeliveryError(f"sink rejected event: HTTP {status}", status_code=status)
        raise TransientDeliveryError(f"sink error: HTTP {status}", status_code=status)

    async def validate(self, event: OutboundEvent) -> List[Dict[str, Any]]:
        """Ask the debug endpoint for validation diagnostics; nothing is ingested."""
        response = await self._post(f"{self.endpoint}{DEBUG_COLLECT_PATH}", event.to_sink_payload())
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"debug validation failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json().get("validationMessages", [])

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
