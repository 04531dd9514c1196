"""Model provider interface consumed by the model-call nodes.

The default implementation speaks the OpenAI-compatible
``/chat/completions`` protocol over httpx, which covers hosted APIs as well
as local servers (vLLM, Ollama, LM Studio).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field

from flowforge.core.errors import IntegrationError

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: str
    content: str


class ModelRequest(BaseModel):
    """Provider-neutral chat request assembled by the dispatcher."""

    prompt: str
    model: str | None = None
    system_prompt: str | None = None
    history: list[ChatMessage] = Field(default_factory=list)
    temperature: float = 0.7
    image_data_uri: str | None = None  # data: or http(s) URL for vision calls
    api_key: str | None = None


class ModelResponse(BaseModel):
    text: str
    model: str
    usage: dict[str, Any] = Field(default_factory=dict)


class ModelProvider(ABC):
    """Abstract chat model backend."""

    @abstractmethod
    async def generate(self, request: ModelRequest) -> ModelResponse:
        """Return the model's reply to request."""


class OpenAICompatibleProvider(ModelProvider):
    """Chat completions over an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        default_model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _build_messages(self, request: ModelRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend(m.model_dump() for m in request.history)

        if request.image_data_uri:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": request.prompt},
                        {"type": "image_url", "image_url": {"url": request.image_data_uri}},
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": request.prompt})
        return messages

    async def generate(self, request: ModelRequest) -> ModelResponse:
        model = request.model or self.default_model
        headers = {"Content-Type": "application/json"}
        api_key = request.api_key or self.api_key
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        payload = {
            "model": model,
            "messages": self._build_messages(request),
            "temperature": request.temperature,
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post("/chat/completions", headers=headers, json=payload)
        except httpx.TimeoutException as e:
            raise IntegrationError(f"Model request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise IntegrationError(f"Model request failed: {e}") from e

        if response.status_code != 200:
            raise IntegrationError(
                f"Model API error ({response.status_code}): {response.text[:500]}"
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise IntegrationError(f"Unexpected model API response: {e}") from e

        logger.debug(f"Model '{model}' returned {len(text)} chars")
        return ModelResponse(text=text, model=data.get("model", model), usage=data.get("usage") or {})
