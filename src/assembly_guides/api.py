"""Vision/text model providers behind one async interface.

Features:
- Async httpx client per call with the configured timeout
- Gemini (generateContent), OpenAI (chat/completions) and OpenRouter
  (OpenAI-compatible) wire formats
- Usage tracking on every response
- No retries: a failed call raises ProviderError and the caller decides
  whether to escalate

Example:
    primary, secondary = create_vision_providers(Settings.from_env())
    response = await primary.analyze(page.image, page.mime_type, prompt)
    print(response.text, response.input_tokens, response.output_tokens)
"""

import base64
import json
from dataclasses import dataclass
from typing import Any

import httpx

from .config import ProviderConfig, Settings
from .errors import ConfigError, ProviderContentError, ProviderError

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta/models"
OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"


@dataclass(frozen=True)
class VisionResponse:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


class VisionProvider:
    """Base class: subclasses supply the URL, headers, payload and parser."""

    provider = ""

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.model = config.model
        self.transport = transport

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"

    async def analyze(
        self,
        image: bytes,
        mime_type: str,
        prompt: str,
        max_tokens: int | None = None,
    ) -> VisionResponse:
        """Send one image plus a prompt and return the model's text."""
        encoded = base64.b64encode(image).decode("ascii")
        payload = self._payload(prompt, max_tokens, image_b64=encoded, mime_type=mime_type)
        return await self._post(payload)

    async def complete(self, prompt: str, max_tokens: int | None = None) -> VisionResponse:
        """Text-only call (used by the refinement pass)."""
        return await self._post(self._payload(prompt, max_tokens))

    async def _post(self, payload: dict[str, Any]) -> VisionResponse:
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    self._url(), headers=self._headers(), json=payload
                )
        except httpx.HTTPError as e:
            raise ProviderError(
                self.provider, None, f"{type(e).__name__}: {e}", model=self.model
            ) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                self.provider, response.status_code, response.text, model=self.model
            )

        try:
            data = response.json()
        except json.JSONDecodeError:
            raise ProviderContentError(
                self.provider,
                f"Invalid JSON response: {response.text[:200]}",
                model=self.model,
            )
        return self._parse(data)

    def _url(self) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    def _payload(
        self,
        prompt: str,
        max_tokens: int | None,
        image_b64: str | None = None,
        mime_type: str | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse(self, data: dict[str, Any]) -> VisionResponse:
        raise NotImplementedError


class GeminiVisionProvider(VisionProvider):
    provider = "gemini"

    def _url(self) -> str:
        return f"{GEMINI_API_URL}/{self.model}:generateContent?key={self.config.api_key}"

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _payload(self, prompt, max_tokens, image_b64=None, mime_type=None):
        parts: list[dict[str, Any]] = []
        if image_b64 is not None:
            parts.append({"inlineData": {"mimeType": mime_type, "data": image_b64}})
        parts.append({"text": prompt})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": max_tokens or self.config.max_tokens,
            },
        }

    def _parse(self, data):
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = parts[0].get("text") if parts else None
        usage = data.get("usageMetadata") or {}
        input_tokens = usage.get("promptTokenCount", 0)
        output_tokens = usage.get("candidatesTokenCount", 0)
        if not text:
            raise ProviderContentError(
                self.provider,
                "Gemini returned no content",
                model=self.model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return VisionResponse(
            text=text,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


class OpenAIVisionProvider(VisionProvider):
    provider = "openai"

    def _url(self) -> str:
        return OPENAI_API_URL

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, prompt, max_tokens, image_b64=None, mime_type=None):
        content: list[dict[str, Any]] = []
        if image_b64 is not None:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type};base64,{image_b64}"},
                }
            )
        content.append({"type": "text", "text": prompt})
        return {
            "model": self.model,
            "temperature": self.config.temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
            "messages": [{"role": "user", "content": content}],
        }

    def _parse(self, data):
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        text = message.get("content")
        usage = data.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)
        if not text:
            raise ProviderContentError(
                self.provider,
                f"{self.provider} returned no content",
                model=self.model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return VisionResponse(
            text=text,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


class OpenRouterVisionProvider(OpenAIVisionProvider):
    """OpenAI wire format routed through OpenRouter (model ids like google/gemini-...)."""

    provider = "openrouter"

    def _url(self) -> str:
        return OPENROUTER_API_URL

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = "https://github.com/assembly-guides"
        return headers


PROVIDER_CLASSES: dict[str, type[VisionProvider]] = {
    "gemini": GeminiVisionProvider,
    "openai": OpenAIVisionProvider,
    "openrouter": OpenRouterVisionProvider,
}


def create_vision_provider(
    config: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> VisionProvider:
    """Create a VisionProvider instance from a configuration object."""
    cls = PROVIDER_CLASSES.get(config.provider)
    if cls is None:
        raise ConfigError(f"Unknown AI provider: {config.provider}")
    if not config.api_key:
        raise ConfigError(f"Missing API key for AI provider ({config.provider})")
    return cls(config, transport=transport)


def create_vision_providers(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[VisionProvider, VisionProvider | None]:
    """Build the (primary, secondary) pair; secondary is None when unconfigured."""
    primary = create_vision_provider(settings.primary, transport=transport)
    secondary = None
    if settings.secondary is not None:
        secondary = create_vision_provider(settings.secondary, transport=transport)
    return primary, secondary
