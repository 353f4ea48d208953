from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any

import httpx

from devsentinel.config import API_KEY_ENV, LLMConfig, Provider
from devsentinel.errors import LLMError

LOGGER = logging.getLogger("devsentinel")

Message = dict[str, str]

AZURE_API_VERSION = "2024-06-01"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


@dataclass
class ToolCall:
    name: str
    arguments: str
    id: str | None = None

    def parsed_arguments(self) -> dict[str, Any]:
        try:
            parsed = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


@dataclass
class LLMResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class ProviderAdapter:
    """Translates between the chat-message shape and one provider's wire format."""

    provider: Provider

    def endpoint(self, config: LLMConfig) -> str:
        raise NotImplementedError

    def headers(self, config: LLMConfig) -> dict[str, str]:
        raise NotImplementedError

    def format_request(
        self,
        config: LLMConfig,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, data: dict[str, Any]) -> str | None:
        raise NotImplementedError

    def parse_tool_calls(self, data: dict[str, Any]) -> list[ToolCall]:
        raise NotImplementedError


class OpenAICompatibleAdapter(ProviderAdapter):
    def __init__(self, provider: Provider, url: str, extra_headers: dict[str, str] | None = None) -> None:
        self.provider = provider
        self.url = url
        self.extra_headers = dict(extra_headers or {})

    def endpoint(self, config: LLMConfig) -> str:
        return self.url

    def headers(self, config: LLMConfig) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {config.api_key}", "Content-Type": "application/json"}
        headers.update(self.extra_headers)
        return headers

    def format_request(
        self,
        config: LLMConfig,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    def _message(self, data: dict[str, Any]) -> dict[str, Any]:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return {}
        return choices[0].get("message") or {}

    def parse_response(self, data: dict[str, Any]) -> str | None:
        content = self._message(data).get("content")
        return content if isinstance(content, str) and content else None

    def parse_tool_calls(self, data: dict[str, Any]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for item in self._message(data).get("tool_calls") or []:
            function = item.get("function") or {}
            if not function.get("name"):
                continue
            calls.append(
                ToolCall(
                    name=str(function["name"]),
                    arguments=str(function.get("arguments") or "{}"),
                    id=item.get("id"),
                )
            )
        return calls


class AzureOpenAIAdapter(OpenAICompatibleAdapter):
    def __init__(self) -> None:
        super().__init__(Provider.AZURE, url="")

    def endpoint(self, config: LLMConfig) -> str:
        if not config.endpoint or not config.deployment:
            raise LLMError("Azure OpenAI needs both an endpoint and a deployment name")
        base = config.endpoint.rstrip("/")
        return f"{base}/openai/deployments/{config.deployment}/chat/completions?api-version={AZURE_API_VERSION}"

    def headers(self, config: LLMConfig) -> dict[str, str]:
        return {"api-key": str(config.api_key), "Content-Type": "application/json"}


class GeminiAdapter(ProviderAdapter):
    provider = Provider.GEMINI

    def endpoint(self, config: LLMConfig) -> str:
        return f"{GEMINI_BASE_URL}/{config.model}:generateContent"

    def headers(self, config: LLMConfig) -> dict[str, str]:
        return {"x-goog-api-key": str(config.api_key), "Content-Type": "application/json"}

    def format_request(
        self,
        config: LLMConfig,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        system_parts = [{"text": m["content"]} for m in messages if m.get("role") == "system"]
        contents = [
            {
                "role": "model" if m.get("role") == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in messages
            if m.get("role") != "system"
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": config.temperature,
                "maxOutputTokens": config.max_tokens,
            },
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool["function"]["name"],
                            "description": tool["function"].get("description", ""),
                            "parameters": tool["function"].get("parameters", {}),
                        }
                        for tool in tools
                    ]
                }
            ]
        return body

    def _parts(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            return []
        return (candidates[0].get("content") or {}).get("parts") or []

    def parse_response(self, data: dict[str, Any]) -> str | None:
        texts = [part["text"] for part in self._parts(data) if isinstance(part.get("text"), str)]
        content = "".join(texts)
        return content or None

    def parse_tool_calls(self, data: dict[str, Any]) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for part in self._parts(data):
            function_call = part.get("functionCall")
            if not function_call or not function_call.get("name"):
                continue
            calls.append(
                ToolCall(
                    name=str(function_call["name"]),
                    arguments=json.dumps(function_call.get("args") or {}),
                )
            )
        return calls


PROVIDER_ADAPTERS: dict[Provider, ProviderAdapter] = {
    Provider.OPENROUTER: OpenAICompatibleAdapter(
        Provider.OPENROUTER,
        "https://openrouter.ai/api/v1/chat/completions",
        extra_headers={"HTTP-Referer": "http://localhost", "X-Title": "devsentinel"},
    ),
    Provider.GROQ: OpenAICompatibleAdapter(Provider.GROQ, "https://api.groq.com/openai/v1/chat/completions"),
    Provider.TOGETHER: OpenAICompatibleAdapter(Provider.TOGETHER, "https://api.together.xyz/v1/chat/completions"),
    Provider.AZURE: AzureOpenAIAdapter(),
    Provider.GEMINI: GeminiAdapter(),
}


def adapter_for(provider: Provider) -> ProviderAdapter:
    try:
        return PROVIDER_ADAPTERS[provider]
    except KeyError:
        raise LLMError(f"Unsupported provider: {provider}") from None


_FENCED_RE = re.compile(r"```[\w+-]*[ \t]*\r?\n?(?P<body>.*?)\r?\n?[ \t]*```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Body of the first fenced block, or the text itself without surrounding blank lines."""
    match = _FENCED_RE.search(text)
    if match:
        return match.group("body").strip("\r\n")
    return text.strip("\r\n").rstrip()


class LLMClient:
    def __init__(self, config: LLMConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self.adapter = adapter_for(config.provider)
        self._transport = transport

    async def complete(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResponse:
        provider = self.config.provider.value
        if not self.config.api_key:
            raise LLMError(f"{provider} API key is missing; set {API_KEY_ENV[self.config.provider]}")

        url = self.adapter.endpoint(self.config)
        body = self.adapter.format_request(self.config, messages, tools)
        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, headers=self.adapter.headers(self.config), json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            raise LLMError(f"LLM call timed out for {provider} after {self.config.timeout_seconds}s") from exc
        except httpx.HTTPStatusError as exc:
            raise LLMError(f"LLM API error ({exc.response.status_code}): {exc.response.text[:500]}") from exc
        except httpx.HTTPError as exc:
            raise LLMError(f"Failed to call {provider} LLM: {exc}") from exc
        except ValueError as exc:
            raise LLMError(f"{provider} returned a non-JSON response") from exc

        if not isinstance(data, dict):
            raise LLMError(f"{provider} returned an unexpected payload")
        content = self.adapter.parse_response(data)
        tool_calls = self.adapter.parse_tool_calls(data)
        if not content and not tool_calls:
            raise LLMError("No content returned from LLM")
        return LLMResponse(content=content or "", tool_calls=tool_calls)

    async def complete_text(self, system: str, user: str) -> str:
        response = await self.complete(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ]
        )
        if not response.content:
            raise LLMError("LLM answered with tool calls where text was expected")
        return response.content
