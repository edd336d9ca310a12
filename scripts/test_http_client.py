from __future__ import annotations

import asyncio
import json
import logging
import unittest
from typing import Any

import aiohttp

from token_seller.trading.errors import HttpStatusError, NetworkError, ValidationError
from token_seller.trading.http_client import RetryableHttpClient


class _FakeResponse:
    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        if isinstance(body, bytes):
            self._body = body
        else:
            self._body = (body if isinstance(body, str) else json.dumps(body)).encode("utf-8")

    async def read(self) -> bytes:
        return self._body



class _FakeRequest:
    def __init__(self, outcome: Any) -> None:
        self._outcome = outcome

    async def __aenter__(self) -> _FakeResponse:
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    def __init__(self, outcomes: list[Any]) -> None:
        self._outcomes = list(outcomes)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeRequest:
        self.calls.append((method, url, kwargs))
        return _FakeRequest(self._outcomes.pop(0))

    async def close(self) -> None:
        self.closed = True


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class RetryableHttpClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, outcomes: list[Any], *, max_retries: int = 3) -> tuple[RetryableHttpClient, _FakeSession]:
        session = _FakeSession(outcomes)
        self.sleep = _SleepRecorder()
        client = RetryableHttpClient(
            logger=logging.getLogger("test.http"),
            base_url="https://backend.example/api/",
            max_retries=max_retries,
            retry_base_delay_ms=2000,
            session=session,  # type: ignore[arg-type]
            sleep=self.sleep,
        )
        return client, session

    async def test_server_errors_are_retried_with_backoff(self) -> None:
        client, session = self._client(
            [
                _FakeResponse(503, {"error": "unavailable"}),
                _FakeResponse(503, {"error": "unavailable"}),
                _FakeResponse(200, {"tokens": {"SOL": "So11111111111111111111111111111111111111112"}}),
            ]
        )

        body = await client.get("/jupiter/tokens")

        self.assertIn("tokens", body)
        self.assertEqual(len(session.calls), 3)
        self.assertEqual(self.sleep.delays, [2.0, 4.0])

    async def test_client_error_is_fatal(self) -> None:
        client, session = self._client([_FakeResponse(404, {"message": "not found"})])

        with self.assertRaises(HttpStatusError) as ctx:
            await client.get("/missing")

        self.assertEqual(ctx.exception.status, 404)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(len(session.calls), 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_rate_limit_is_retryable(self) -> None:
        client, session = self._client(
            [_FakeResponse(429, {"error": "slow down"}), _FakeResponse(200, {"ok": True})],
        )

        body = await client.post("/jupiter/quote", {"amount": 1})

        self.assertEqual(body, {"ok": True})
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(session.calls[0][2]["json"], {"amount": 1})

    async def test_timeouts_exhaust_all_tries(self) -> None:
        client, session = self._client([asyncio.TimeoutError()] * 4)

        with self.assertRaises(NetworkError):
            await client.get("/jupiter/tokens")

        self.assertEqual(len(session.calls), 4)
        self.assertEqual(self.sleep.delays, [2.0, 4.0, 8.0])

    async def test_connection_errors_are_network_errors(self) -> None:
        client, session = self._client(
            [aiohttp.ClientConnectionError("reset"), _FakeResponse(200, {"ok": True})],
        )

        body = await client.get("/jupiter/tokens")

        self.assertEqual(body, {"ok": True})
        self.assertEqual(len(session.calls), 2)

    async def test_malformed_body_is_not_retried(self) -> None:
        client, session = self._client([_FakeResponse(200, "<html>oops</html>")])

        with self.assertRaises(ValidationError):
            await client.get("/jupiter/tokens")

        self.assertEqual(len(session.calls), 1)

    async def test_request_timeout_status_is_retryable(self) -> None:
        client, session = self._client(
            [_FakeResponse(408, {"error": "request timeout"}), _FakeResponse(200, {"ok": True})],
        )

        body = await client.get("/jupiter/tokens")

        self.assertEqual(body, {"ok": True})
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(self.sleep.delays, [2.0])

    async def test_non_utf8_body_is_a_validation_error(self) -> None:
        client, session = self._client([_FakeResponse(200, b'{"quoteResponse": "\xff\xfe"}')])

        with self.assertRaises(ValidationError):
            await client.get("/jupiter/quote")

        self.assertEqual(len(session.calls), 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_non_utf8_error_body_keeps_the_status(self) -> None:
        client, _ = self._client([_FakeResponse(400, b"\xff\xfe bad")])

        with self.assertRaises(HttpStatusError) as ctx:
            await client.get("/jupiter/quote")

        self.assertEqual(ctx.exception.status, 400)

    async def test_non_object_body_is_rejected(self) -> None:
        client, _ = self._client([_FakeResponse(200, [1, 2, 3])])

        with self.assertRaises(ValidationError):
            await client.get("/jupiter/tokens")

    async def test_retry_override_zero_sends_once(self) -> None:
        client, session = self._client([_FakeResponse(502, {"error": "bad gateway"})])

        with self.assertRaises(HttpStatusError) as ctx:
            await client.post("/jupiter/swap", {"quoteResponse": {}}, retry_override=0)

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(len(session.calls), 1)

    async def test_unsupported_method_is_rejected(self) -> None:
        client, session = self._client([])

        with self.assertRaises(ValidationError):
            await client.execute("PATCH", "/jupiter/tokens")

        self.assertEqual(session.calls, [])

    async def test_build_url_joins_base_and_endpoint(self) -> None:
        client, _ = self._client([])

        self.assertEqual(client.build_url("/jupiter/quote"), "https://backend.example/api/jupiter/quote")
        self.assertEqual(client.build_url(""), "https://backend.example/api")
        self.assertEqual(client.build_url("https://other.example/x"), "https://other.example/x")

    async def test_injected_session_is_not_closed(self) -> None:
        client, session = self._client([])

        await client.close()

        self.assertFalse(session.closed)


if __name__ == "__main__":
    unittest.main()
