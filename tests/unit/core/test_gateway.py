"""Tests for the model gateway."""

import asyncio
import json
import time

import httpx
import pytest

from trustflow.core.exceptions import (
    AuthenticationRequired,
    EmptyResponseError,
    GatewayError,
    RateLimitExceeded,
)
from trustflow.core.gateway import ModelRequest

REQUEST = ModelRequest(system_prompt="system", user_prompt="user", max_tokens=800, temperature=0.2)


class CountingHandler:
    """MockTransport handler that records every request it sees."""

    def __init__(self, response: httpx.Response = None, exc: Exception = None):
        self.requests = []
        self.response = response
        self.exc = exc

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        return self.response


@pytest.mark.asyncio
async def test_call_without_token_makes_no_network_call(make_gateway):
    handler = CountingHandler(httpx.Response(200, json={}))
    gateway = make_gateway(handler)

    for token in (None, ""):
        response = await gateway.call(REQUEST, token)

        assert response.success is False
        assert isinstance(response.error, AuthenticationRequired)
    assert handler.requests == []


@pytest.mark.asyncio
async def test_successful_call_returns_first_message_content(make_gateway, completion, session_token):
    handler = CountingHandler(httpx.Response(200, json=completion('{"verified": true}')))
    gateway = make_gateway(handler)

    response = await gateway.call(REQUEST, session_token)

    assert response.success is True
    assert response.content == '{"verified": true}'
    assert response.error is None
    assert response.raw["choices"][0]["message"]["content"] == '{"verified": true}'


@pytest.mark.asyncio
async def test_request_carries_bearer_token_and_chat_payload(make_gateway, completion, session_token):
    handler = CountingHandler(httpx.Response(200, json=completion("ok")))
    gateway = make_gateway(handler)

    await gateway.call(REQUEST, session_token)

    sent = handler.requests[0]
    assert sent.method == "POST"
    assert str(sent.url) == gateway.config.base_url
    assert sent.headers["Authorization"] == f"Bearer {session_token}"
    body = json.loads(sent.content)
    assert body == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ],
        "temperature": 0.2,
        "max_tokens": 800,
    }


def test_payload_uses_config_defaults_when_request_omits_limits(make_gateway):
    gateway = make_gateway(CountingHandler(), max_tokens=1000, temperature=0.3)

    payload = gateway.build_payload(ModelRequest(system_prompt="s", user_prompt="u"))

    assert payload["max_tokens"] == 1000
    assert payload["temperature"] == 0.3


@pytest.mark.asyncio
async def test_http_error_is_reported_with_status_and_body_and_not_retried(make_gateway, session_token):
    handler = CountingHandler(httpx.Response(500, text="upstream exploded"))
    gateway = make_gateway(handler)

    response = await gateway.call(REQUEST, session_token)

    assert response.success is False
    assert isinstance(response.error, GatewayError)
    assert response.error.status_code == 500
    assert response.error.body == "upstream exploded"
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_remote_429_is_rate_limit_exceeded(make_gateway, session_token):
    gateway = make_gateway(CountingHandler(httpx.Response(429, text="Too many requests")))

    response = await gateway.call(REQUEST, session_token)

    assert isinstance(response.error, RateLimitExceeded)
    assert response.error.status_code == 429


@pytest.mark.asyncio
async def test_timeout_is_a_gateway_error(make_gateway, session_token):
    handler = CountingHandler(exc=httpx.ReadTimeout("timed out"))
    gateway = make_gateway(handler)

    response = await gateway.call(REQUEST, session_token)

    assert response.success is False
    assert type(response.error) is GatewayError
    assert "Timed out" in response.error.message
    assert len(handler.requests) == 1


@pytest.mark.asyncio
async def test_slow_response_is_cut_off_at_the_wall_clock_timeout(make_gateway, completion, session_token):
    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2.0)
        return httpx.Response(200, json=completion("too late"))

    gateway = make_gateway(slow_handler, timeout_seconds=0.2)

    started = time.monotonic()
    response = await gateway.call(REQUEST, session_token)
    elapsed = time.monotonic() - started

    assert response.success is False
    assert type(response.error) is GatewayError
    assert "Timed out after 0.2s" in response.error.message
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_network_failure_is_a_gateway_error(make_gateway, session_token):
    gateway = make_gateway(CountingHandler(exc=httpx.ConnectError("connection refused")))

    response = await gateway.call(REQUEST, session_token)

    assert isinstance(response.error, GatewayError)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"choices": []},
        {"choices": [{"message": {"content": ""}}]},
        {"choices": [{"message": {"content": "   "}}]},
        {"choices": [{"message": {"content": None}}]},
        {"choices": [{"message": {"content": 42}}]},
        {"result": "no choices"},
    ],
)
async def test_missing_content_is_empty_response(make_gateway, session_token, body):
    gateway = make_gateway(CountingHandler(httpx.Response(200, json=body)))

    response = await gateway.call(REQUEST, session_token)

    assert response.success is False
    assert isinstance(response.error, EmptyResponseError)


@pytest.mark.asyncio
async def test_non_json_body_is_a_gateway_error(make_gateway, session_token):
    gateway = make_gateway(CountingHandler(httpx.Response(200, text="<html>proxy page</html>")))

    response = await gateway.call(REQUEST, session_token)

    assert response.success is False
    assert isinstance(response.error, GatewayError)


@pytest.mark.asyncio
async def test_request_budget_is_enforced_per_token_without_network_call(
    make_gateway, completion, session_token
):
    handler = CountingHandler(httpx.Response(200, json=completion("ok")))
    gateway = make_gateway(handler, rate_limit_per_minute=2)

    first = await gateway.call(REQUEST, session_token)
    second = await gateway.call(REQUEST, session_token)
    third = await gateway.call(REQUEST, session_token)
    other_user = await gateway.call(REQUEST, "another-token")

    assert first.success and second.success
    assert isinstance(third.error, RateLimitExceeded)
    assert other_user.success
    assert len(handler.requests) == 3


@pytest.mark.asyncio
async def test_unconfigured_base_url_fails_without_network_call(make_gateway, session_token):
    handler = CountingHandler(httpx.Response(200, json={}))
    gateway = make_gateway(handler, base_url="")

    response = await gateway.call(REQUEST, session_token)

    assert isinstance(response.error, GatewayError)
    assert handler.requests == []
