"""LLM collaborator: an OpenAI-compatible chat completion client."""

from __future__ import annotations

from typing import Any, Protocol

import httpx

from .logging import get_logger
from .settings import LLMSettings

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "Você é {assistant}, assistente virtual de um escritório de advocacia brasileiro. "
    "Faz a triagem inicial de novos clientes pelo WhatsApp: é cordial, objetiva, "
    "escreve frases curtas em português e nunca dá parecer jurídico definitivo."
)


class LLMError(RuntimeError):
    """The provider answered with an error or an unusable payload."""


class LLMUnavailableError(LLMError):
    """No provider is configured (for example, missing API key)."""


class LLMProvider(Protocol):
    async def generate(self, prompt: str, *, assistant: str = "Ana") -> str:
        """Short conversational reply."""
        ...

    async def generate_analysis(self, prompt: str) -> str:
        """Long or structured output (triage JSON, pre-analysis)."""
        ...


class GroqProvider:
    """Chat completions against Groq (or any OpenAI-compatible endpoint)."""

    def __init__(
        self,
        settings: LLMSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._api_key = settings.api_key.get_secret_value() if settings.api_key else None
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url, timeout=settings.timeout_s
        )

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    async def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        top_p: float | None = None,
    ) -> str:
        if not self._api_key:
            raise LLMUnavailableError("LLM API key not configured")

        body: dict[str, Any] = {
            "model": self.settings.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if top_p is not None:
            body["top_p"] = top_p

        try:
            response = await self._client.post(
                "/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=body,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("llm.request_failed", model=self.settings.model, error=str(e))
            raise LLMError(f"completion request failed: {e}") from e

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise LLMError("malformed completion payload") from e
        if not content or not str(content).strip():
            raise LLMError("empty completion")
        return str(content).strip()

    async def generate(self, prompt: str, *, assistant: str = "Ana") -> str:
        s = self.settings
        return await self._complete(
            [
                {"role": "system", "content": SYSTEM_PROMPT.format(assistant=assistant)},
                {"role": "user", "content": prompt},
            ],
            temperature=s.temperature,
            max_tokens=s.max_tokens,
            top_p=s.top_p,
        )

    async def generate_analysis(self, prompt: str) -> str:
        s = self.settings
        return await self._complete(
            [{"role": "user", "content": prompt}],
            temperature=s.analysis_temperature,
            max_tokens=s.analysis_max_tokens,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
