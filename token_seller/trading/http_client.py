from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import aiohttp

from token_seller.common import RetryPolicy, log_event, retry_with_backoff
from token_seller.common.retry import SleepFunc

from .errors import HttpStatusError, NetworkError, ValidationError

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE"})


def _error_message_from_body(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)
        raw_text = body.get("raw_text")
        if raw_text:
            return str(raw_text)[:240]
    if body:
        return str(body)[:240]
    return ""


def describe_status(status: int, *, url: str, body: Any) -> str:
    detail = _error_message_from_body(body)
    if status == 404:
        return f"HTTP 404: endpoint not found, check the API configuration (url={url} response={detail})"
    if status == 502:
        return (
            "HTTP 502: bad gateway, the API server is having issues or the requested token "
            "may not be supported"
        )
    if status == 500:
        return f"HTTP 500: internal server error ({detail}), check request parameters"
    return f"HTTP {status}: {detail}" if detail else f"HTTP {status}"


class RetryableHttpClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        base_url: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_base_delay_ms: int = 2000,
        user_agent: str = "token-seller/1.0",
        headers: dict[str, str] | None = None,
        session: aiohttp.ClientSession | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._policy = RetryPolicy(max_attempts=max(0, int(max_retries)), base_delay_ms=retry_base_delay_ms)
        self._headers = {
            "Content-Type": "application/json",
            "User-Agent": user_agent,
            **(headers or {}),
        }
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not endpoint:
            return self._base_url
        return f"{self._base_url}/{endpoint.lstrip('/')}"

    async def execute(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
        retry_override: int | None = None,
    ) -> dict[str, Any]:
        verb = method.strip().upper()
        if verb not in SUPPORTED_METHODS:
            raise ValidationError(f"Unsupported HTTP method: {method}")

        if self._session is None:
            await self.connect()

        url = self.build_url(endpoint)
        policy = self._policy if retry_override is None else self._policy.with_max_attempts(max(0, retry_override))
        started = time.monotonic()

        async def attempt_once(attempt: int) -> dict[str, Any]:
            log_event(
                self._logger,
                level="debug",
                event="http_request_attempt",
                message="Sending API request",
                method=verb,
                endpoint=endpoint,
                attempt=attempt,
                max_attempts=policy.total_tries,
            )
            return await self._send_once(verb, url, endpoint, payload)

        try:
            body = await retry_with_backoff(
                attempt_once,
                policy=policy,
                logger=self._logger,
                event="http_request",
                sleep=self._sleep,
                method=verb,
                endpoint=endpoint,
            )
        except (NetworkError, HttpStatusError, ValidationError) as error:
            log_event(
                self._logger,
                level="error",
                event="http_request_failed",
                message="API request failed permanently",
                method=verb,
                endpoint=endpoint,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                error=error.to_dict(),
            )
            raise

        log_event(
            self._logger,
            level="debug",
            event="http_request_succeeded",
            message="API request successful",
            method=verb,
            endpoint=endpoint,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return body

    async def _send_once(
        self,
        method: str,
        url: str,
        endpoint: str,
        payload: dict[str, Any] | None,
    ) -> dict[str, Any]:
        if self._session is None:
            raise RuntimeError("HTTP session is not initialized.")

        kwargs: dict[str, Any] = {"headers": self._headers}
        if payload is not None and method in {"POST", "PUT"}:
            kwargs["json"] = payload

        try:
            async with self._session.request(method, url, **kwargs) as response:
                status = response.status
                raw_body = await response.read()
        except asyncio.TimeoutError as error:
            raise NetworkError(
                f"Network timeout: the API server did not respond ({method} {endpoint})",
                method=method,
                endpoint=endpoint,
            ) from error
        except aiohttp.ClientConnectionError as error:
            raise NetworkError(
                f"Network error: {error}",
                method=method,
                endpoint=endpoint,
            ) from error
        except aiohttp.ClientError as error:
            raise ValidationError(f"Request error: {error}") from error

        parsed: Any
        malformed = False
        try:
            raw_text = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raw_text = raw_body.decode("utf-8", errors="replace")
            malformed = True

        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw_text": raw_text}
            malformed = True

        if status >= 400:
            raise HttpStatusError(
                describe_status(status, url=url, body=parsed),
                status=status,
                method=method,
                endpoint=endpoint,
                body=parsed,
            )

        if malformed or not isinstance(parsed, dict):
            raise ValidationError(f"Malformed response from {method} {endpoint}: expected a JSON object")

        return parsed

    async def get(self, endpoint: str, retry_override: int | None = None) -> dict[str, Any]:
        return await self.execute("GET", endpoint, retry_override=retry_override)

    async def post(
        self,
        endpoint: str,
        payload: dict[str, Any],
        retry_override: int | None = None,
    ) -> dict[str, Any]:
        return await self.execute("POST", endpoint, payload, retry_override=retry_override)

    async def put(
        self,
        endpoint: str,
        payload: dict[str, Any],
        retry_override: int | None = None,
    ) -> dict[str, Any]:
        return await self.execute("PUT", endpoint, payload, retry_override=retry_override)

    async def delete(self, endpoint: str, retry_override: int | None = None) -> dict[str, Any]:
        return await self.execute("DELETE", endpoint, retry_override=retry_override)
