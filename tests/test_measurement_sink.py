from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from pipeline.errors import PermanentDeliveryError, TransientDeliveryError
from pipeline.measurement_sink import MeasurementProtocolSink
from schemas.event_definitions import OutboundEvent

MEASUREMENT_ID = "G-ABCDEF1234"
API_SECRET = "secret_value_that_is_long_enough"


def _sink(handler, debug_mode: bool = False) -> MeasurementProtocolSink:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MeasurementProtocolSink(
        endpoint="https://analytics.test/",
        measurement_id=MEASUREMENT_ID,
        api_secret=API_SECRET,
        debug_mode=debug_mode,
        client=client,
    )


def _event() -> OutboundEvent:
    return OutboundEvent(
        name="purchase",
        params={"transaction_id": "cs_1", "value": 54.0, "currency": "USD"},
        client_id="ga-client-1",
        user_id="cus_1",
        user_properties={"payment_method": "card"},
        enqueued_at=1760000000.5,
    )


def test_send_posts_measurement_protocol_body() -> None:
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    asyncio.run(_sink(handler).send(_event()))

    assert captured["url"].path == "/mp/collect"
    assert captured["url"].params["measurement_id"] == MEASUREMENT_ID
    assert captured["url"].params["api_secret"] == API_SECRET
    assert captured["body"] == {
        "client_id": "ga-client-1",
        "user_id": "cus_1",
        "timestamp_micros": 1760000000500000,
        "user_properties": {"payment_method": {"value": "card"}},
        "events": [
            {"name": "purchase", "params": {"transaction_id": "cs_1", "value": 54.0, "currency": "USD"}}
        ],
    }


def test_debug_mode_uses_debug_endpoint() -> None:
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"validationMessages": []})

    asyncio.run(_sink(handler, debug_mode=True).send(_event()))
    assert paths == ["/debug/mp/collect"]


def test_rate_limit_response_is_transient_with_retry_after() -> None:
    sink = _sink(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))

    with pytest.raises(TransientDeliveryError) as exc:
        asyncio.run(sink.send(_event()))

    assert exc.value.is_rate_limited
    assert exc.value.retry_after == 12.0


@pytest.mark.parametrize("status", [400, 403, 404, 413])
def test_client_errors_are_permanent(status: int) -> None:
    sink = _sink(lambda request: httpx.Response(status))

    with pytest.raises(PermanentDeliveryError) as exc:
        asyncio.run(sink.send(_event()))
    assert exc.value.status_code == status


@pytest.mark.parametrize("status", [500, 502, 503])
def test_server_errors_are_transient(status: int) -> None:
    sink = _sink(lambda request: httpx.Response(status))

    with pytest.raises(TransientDeliveryError) as exc:
        asyncio.run(sink.send(_event()))
    assert not exc.value.is_rate_limited


@pytest.mark.parametrize("error", [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")])
def test_network_failures_are_transient(error: Exception) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise error

    with pytest.raises(TransientDeliveryError):
        asyncio.run(_sink(handler).send(_event()))


def test_validate_returns_debug_messages() -> None:
    messages = [{"fieldPath": "events", "description": "bad name", "validationCode": "NAME_INVALID"}]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/debug/mp/collect"
        return httpx.Response(200, json={"validationMessages": messages})

    assert asyncio.run(_sink(handler).validate(_event())) == messages


def test_credentials_are_required() -> None:
    with pytest.raises(ValueError):
        MeasurementProtocolSink("https://analytics.test", measurement_id="", api_secret=API_SECRET)
    with pytest.raises(ValueError):
        MeasurementProtocolSink("https://analytics.test", measurement_id=MEASUREMENT_ID, api_secret="")
