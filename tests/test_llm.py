"""Tests for lexintake.llm.GroqProvider against a mocked HTTP API."""

from __future__ import annotations

import json

import httpx
import pytest

from lexintake.llm import GroqProvider, LLMError, LLMUnavailableError
from lexintake.settings import LLMSettings

BASE_URL = "https://api.groq.test/openai/v1"


def _provider(handler, *, api_key: str | None = "gsk_test_key_123") -> GroqProvider:
    settings = LLMSettings(api_key=api_key, base_url=BASE_URL)
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return GroqProvider(settings, client=client)


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


class TestGroqProvider:
    """Tests for GroqProvider."""

    @pytest.mark.anyio
    async def test_generate_sends_persona_and_sampling(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return _completion("  Olá! Como posso ajudar?  ")

        provider = _provider(handler)
        try:
            reply = await provider.generate("Cumprimente o cliente.", assistant="Bia")
        finally:
            await provider.aclose()

        assert reply == "Olá! Como posso ajudar?"
        request = requests[0]
        assert request.url.path == "/openai/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer gsk_test_key_123"
        body = json.loads(request.content)
        assert body["model"] == "openai/gpt-oss-120b"
        assert body["temperature"] == 0.7
        assert body["top_p"] == 0.9
        assert body["max_tokens"] == 200
        assert body["messages"][0]["role"] == "system"
        assert "Bia" in body["messages"][0]["content"]
        assert body["messages"][1] == {"role": "user", "content": "Cumprimente o cliente."}

    @pytest.mark.anyio
    async def test_generate_analysis_uses_analysis_sampling(self) -> None:
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return _completion('{"case": {}}')

        provider = _provider(handler)
        try:
            assert await provider.generate_analysis("analise") == '{"case": {}}'
        finally:
            await provider.aclose()

        assert bodies[0]["temperature"] == 0.3
        assert bodies[0]["max_tokens"] == 8192
        assert "top_p" not in bodies[0]
        assert bodies[0]["messages"] == [{"role": "user", "content": "analise"}]

    @pytest.mark.anyio
    async def test_missing_key_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        provider = _provider(handler, api_key=None)
        assert provider.available is False
        with pytest.raises(LLMUnavailableError):
            await provider.generate("oi")
        await provider.aclose()

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, text="upstream error"),
            httpx.Response(200, json={"choices": []}),
            httpx.Response(200, json={"choices": [{"message": {"content": "   "}}]}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_bad_responses_raise_llm_error(self, response: httpx.Response) -> None:
        provider = _provider(lambda request: response)
        try:
            with pytest.raises(LLMError) as exc_info:
                await provider.generate("oi")
        finally:
            await provider.aclose()
        assert not isinstance(exc_info.value, LLMUnavailableError)

    @pytest.mark.anyio
    async def test_network_error_raises_llm_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)
        try:
            with pytest.raises(LLMError, match="completion request failed"):
                await provider.generate("oi")
        finally:
            await provider.aclose()
