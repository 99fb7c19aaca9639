"""Gateway to the external reasoning service.

The gateway posts one chat-completions request to the configured proxy and
reports the outcome as a ``GatewayResponse``. It never raises past ``call()``
and never retries.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from trustflow.core.config import GatewayConfig
from trustflow.core.exceptions import (
    AppError,
    AuthenticationRequired,
    EmptyResponseError,
    GatewayError,
    RateLimitExceeded,
)
from trustflow.core.rate_limiter import SlidingWindowRateLimiter
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class ModelRequest:
    """Prompt pair plus sampling limits for one call."""

    system_prompt: str
    user_prompt: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass(frozen=True)
class GatewayResponse:
    """Outcome of one gateway call.

    ``error`` is an ``AuthenticationRequired`` or ``GatewayError`` instance
    (including its ``RateLimitExceeded`` and ``EmptyResponseError``
    subclasses) when ``success`` is False.
    """

    success: bool
    content: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None
    error: Optional[AppError] = None

    @classmethod
    def failed(cls, error: AppError, raw: Optional[Dict[str, Any]] = None) -> "GatewayResponse":
        return cls(success=False, content=None, raw=raw, error=error)


class ResilientModelGateway:
    """Authenticated, timeout-bounded, non-retrying model client."""

    def __init__(
        self,
        config: GatewayConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        """Initialize the gateway.

        Args:
            config: Proxy URL, model, timeout and request budget
            transport: Optional httpx transport (used to stub the network)
            rate_limiter: Optional limiter; built from config when omitted
        """
        self.config = config
        self._transport = transport
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            config.rate_limit_per_minute
        )
        LOGGER.info(f"Initialized model gateway with model {config.model}")

    def build_payload(self, request: ModelRequest) -> Dict[str, Any]:
        """Build the chat-completions request body."""
        return {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": (
                request.temperature
                if request.temperature is not None
                else self.config.temperature
            ),
            "max_tokens": request.max_tokens or self.config.max_tokens,
        }

    async def call(
        self,
        request: ModelRequest,
        auth_token: Optional[str],
    ) -> GatewayResponse:
        """Send one request to the reasoning service.

        Args:
            request: Prompts and sampling limits
            auth_token: Session bearer token; no network call is made without it

        Returns:
            GatewayResponse describing success or the failure
        """
        if not auth_token:
            LOGGER.warning("Model call refused: no session token")
            return GatewayResponse.failed(
                AuthenticationRequired("A session token is required to call the model")
            )

        if not self.config.base_url:
            LOGGER.warning("Model call skipped: no reasoning service URL configured")
            return GatewayResponse.failed(
                GatewayError("Reasoning service URL is not configured")
            )

        if not self.rate_limiter.try_acquire(auth_token):
            retry_after = self.rate_limiter.retry_after(auth_token)
            LOGGER.warning(
                "Model call refused: request budget exhausted",
                extra={"retry_after": round(retry_after, 1)},
            )
            return GatewayResponse.failed(
                RateLimitExceeded(
                    f"Request budget exhausted, retry in {retry_after:.0f}s",
                    status_code=429,
                )
            )

        raw: Optional[Dict[str, Any]] = None
        try:
            raw = await self._post(self.build_payload(request), auth_token)
            content = self._extract_content(raw)
        except GatewayError as e:
            return GatewayResponse.failed(e, raw=raw)
        except Exception as e:
            # Anything unexpected still stays inside the boundary.
            LOGGER.error(f"Unexpected model gateway failure: {e}", exc_info=True)
            return GatewayResponse.failed(
                GatewayError(f"Unexpected gateway failure: {e}", original_error=e),
                raw=raw,
            )

        return GatewayResponse(success=True, content=content, raw=raw)

    async def _post(self, payload: Dict[str, Any], auth_token: str) -> Dict[str, Any]:
        """POST the payload once and return the decoded JSON body.

        Raises:
            GatewayError: On timeout, transport failure, non-2xx or non-JSON body
        """
        headers = {
            "Authorization": f"Bearer {auth_token}",
            "Content-Type": "application/json",
        }
        url = self.config.base_url

        LOGGER.debug(
            f"Calling model gateway: {url}",
            extra={"model": self.config.model, "timeout": self.config.timeout_seconds},
        )

        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self._transport
        ) as client:
            try:
                # httpx limits each connect/read/write step; this bounds the whole call.
                response = await asyncio.wait_for(
                    client.post(url, headers=headers, json=payload),
                    timeout=self.config.timeout_seconds,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                LOGGER.warning("Model gateway timed out", extra={"url": url})
                raise GatewayError(
                    f"Timed out after {self.config.timeout_seconds}s", original_error=e
                ) from e
            except httpx.HTTPError as e:
                LOGGER.warning(
                    "Model gateway network error", extra={"url": url, "error": str(e)}
                )
                raise GatewayError(f"Network error: {e}", original_error=e) from e

        if not response.is_success:
            body = response.text
            LOGGER.warning(
                f"Model gateway HTTP error {response.status_code}",
                extra={"url": url, "status_code": response.status_code, "error_body": body[:500]},
            )
            error_cls = RateLimitExceeded if response.status_code == 429 else GatewayError
            raise error_cls(
                f"Model gateway returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(
                "Model gateway returned a non-JSON body",
                status_code=response.status_code,
                body=response.text,
                original_error=e,
            ) from e

        if not isinstance(data, dict):
            raise GatewayError(
                "Model gateway returned an unexpected body",
                status_code=response.status_code,
                body=response.text,
            )
        return data

    @staticmethod
    def _extract_content(data: Dict[str, Any]) -> str:
        """Pull the first message's text out of a chat-completions body.

        Raises:
            EmptyResponseError: If there is no non-empty string content
        """
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None

        if not isinstance(content, str) or not content.strip():
            LOGGER.warning("Empty response from model gateway")
            raise EmptyResponseError("Model gateway returned no message content")
        return content
