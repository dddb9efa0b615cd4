"""Tests for KeyVerifier (bearer credential check)."""

import logging

import httpx
import pytest

from notchly.models.setup import ErrorKind
from notchly.services.key_verifier import KeyVerifier

MODELS_URL = "https://api.groq.com/openai/v1/models"
SECRET_KEY = "gsk_super_secret_value_123"


def _verifier(handler) -> tuple[KeyVerifier, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return KeyVerifier(url=MODELS_URL, client=client), client


class TestVerify:

    async def test_200_is_ok_and_sends_bearer(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["method"] = request.method
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"data": []})

        verifier, client = _verifier(handler)
        async with client:
            result = await verifier.verify(SECRET_KEY)

        assert result.ok is True
        assert seen == {"auth": f"Bearer {SECRET_KEY}", "method": "GET", "url": MODELS_URL}

    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_is_invalid_credential(self, status):
        verifier, client = _verifier(lambda request: httpx.Response(status))
        async with client:
            result = await verifier.verify(SECRET_KEY)

        assert result.ok is False
        assert result.error == ErrorKind.invalid_credential
        assert result.status_code == status

    async def test_server_error_is_unexpected_status(self):
        verifier, client = _verifier(lambda request: httpx.Response(500))
        async with client:
            result = await verifier.verify(SECRET_KEY)

        assert result.ok is False
        assert result.error == ErrorKind.unexpected_status

    async def test_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        verifier, client = _verifier(handler)
        async with client:
            result = await verifier.verify(SECRET_KEY, timeout=0.1)

        assert result.ok is False
        assert result.error == ErrorKind.timeout

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("name resolution failed", request=request)

        verifier, client = _verifier(handler)
        async with client:
            result = await verifier.verify(SECRET_KEY)

        assert result.ok is False
        assert result.error == ErrorKind.unreachable


def _unreachable(request):
    raise httpx.ConnectError("down", request=request)


class TestCredentialNeverLeaks:

    @pytest.mark.parametrize(
        "handler",
        [
            lambda request: httpx.Response(200),
            lambda request: httpx.Response(401, json={"error": "bad key"}),
            _unreachable,
        ],
        ids=["accepted", "rejected", "unreachable"],
    )
    async def test_not_in_logs_or_result(self, handler, caplog):
        caplog.set_level(logging.DEBUG)
        verifier, client = _verifier(handler)
        async with client:
            result = await verifier.verify(SECRET_KEY)

        assert SECRET_KEY not in caplog.text
        assert SECRET_KEY not in repr(result)
        assert SECRET_KEY not in result.model_dump_json()
