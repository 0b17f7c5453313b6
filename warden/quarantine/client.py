"""Model clients used by the quarantine controller.

Both implementations send plain text-generation requests with no tool
definitions attached, so the models they reach cannot invoke tools.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from warden.config import Settings
from warden.errors import ModelInvocationError

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    async def generate(self, system_prompt: str, messages: list[dict[str, str]], temperature: float) -> str:
        """Return the generated text for a system prompt and message list."""
        ...


def build_anthropic_headers(api_key: str) -> dict[str, str]:
    """Auth headers for Anthropic API calls (API keys or OAuth tokens)."""
    headers: dict[str, str] = {"anthropic-version": "2023-06-01"}
    if "sk-ant-oat" in api_key:
        headers["Authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
    else:
        headers["x-api-key"] = api_key
    return headers


class AnthropicModelClient:
    """Anthropic Messages API, text only."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client

    async def generate(self, system_prompt: str, messages: list[dict[str, str]], temperature: float) -> str:
        try:
            response = await self._http.post(
                f"{self._settings.anthropic_base_url}/v1/messages",
                json={
                    "model": self._settings.dual_llm_model,
                    "max_tokens": self._settings.dual_llm_max_tokens,
                    "system": system_prompt,
                    "messages": messages,
                    "temperature": temperature,
                },
                headers=build_anthropic_headers(self._settings.dual_llm_api_key),
            )
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"Anthropic request failed: {e}") from e

        if response.status_code != 200:
            raise ModelInvocationError(f"Anthropic API error {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise ModelInvocationError("Anthropic API returned a non-JSON body") from e
        return "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )


class OpenAIModelClient:
    """OpenAI-compatible Chat Completions API, text only."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, base_url: str | None = None) -> None:
        self._settings = settings
        self._http = http_client
        self._base_url = base_url or settings.openai_base_url

    async def generate(self, system_prompt: str, messages: list[dict[str, str]], temperature: float) -> str:
        try:
            response = await self._http.post(
                f"{self._base_url}/chat/completions",
                json={
                    "model": self._settings.dual_llm_model,
                    "max_tokens": self._settings.dual_llm_max_tokens,
                    "messages": [{"role": "system", "content": system_prompt}, *messages],
                    "temperature": temperature,
                },
                headers={"Authorization": f"Bearer {self._settings.dual_llm_api_key}"},
            )
        except httpx.HTTPError as e:
            raise ModelInvocationError(f"OpenAI request failed: {e}") from e

        if response.status_code != 200:
            raise ModelInvocationError(f"OpenAI API error {response.status_code}: {response.text[:200]}")

        try:
            choices = response.json().get("choices") or [{}]
        except ValueError as e:
            raise ModelInvocationError("OpenAI API returned a non-JSON body") from e
        return (choices[0].get("message") or {}).get("content") or ""


def create_model_client(settings: Settings, http_client: httpx.AsyncClient) -> ModelClient:
    logger.info("Quarantine model: %s via %s", settings.dual_llm_model, settings.dual_llm_provider)
    if settings.dual_llm_provider == "anthropic":
        return AnthropicModelClient(settings, http_client)
    return OpenAIModelClient(settings, http_client)
