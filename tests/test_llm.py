import asyncio
import json

import httpx
import pytest

from devsentinel.config import LLMConfig, Provider
from devsentinel.errors import LLMError
from devsentinel.llm import (
    PROVIDER_ADAPTERS,
    LLMClient,
    adapter_for,
    strip_code_fences,
)

MESSAGES = [
    {"role": "system", "content": "be terse"},
    {"role": "user", "content": "hello"},
]
TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "run_scan",
            "description": "Run a scan",
            "parameters": {"type": "object", "properties": {}},
        },
    }
]


def _config(provider: Provider = Provider.OPENROUTER, **overrides) -> LLMConfig:
    values = {"provider": provider, "model": "test-model", "api_key": "sk-test"}
    values.update(overrides)
    return LLMConfig(**values)


def test_every_provider_has_an_adapter():
    assert set(PROVIDER_ADAPTERS) == set(Provider)
    assert adapter_for(Provider.GROQ).provider is Provider.GROQ


def test_openai_compatible_request_shape():
    adapter = adapter_for(Provider.OPENROUTER)
    config = _config()
    body = adapter.format_request(config, MESSAGES, TOOLS)
    assert body["model"] == "test-model"
    assert body["messages"] == MESSAGES
    assert body["tool_choice"] == "auto"
    headers = adapter.headers(config)
    assert headers["Authorization"] == "Bearer sk-test"
    assert headers["X-Title"] == "devsentinel"


def test_azure_endpoint_requires_deployment():
    adapter = adapter_for(Provider.AZURE)
    with pytest.raises(LLMError):
        adapter.endpoint(_config(Provider.AZURE, endpoint="https://x.openai.azure.com"))
    url = adapter.endpoint(_config(Provider.AZURE, endpoint="https://x.openai.azure.com/", deployment="gpt4o"))
    assert url.startswith("https://x.openai.azure.com/openai/deployments/gpt4o/chat/completions?api-version=")
    assert adapter.headers(_config(Provider.AZURE))["api-key"] == "sk-test"


def test_gemini_request_and_response_shape():
    adapter = adapter_for(Provider.GEMINI)
    body = adapter.format_request(_config(Provider.GEMINI), MESSAGES + [{"role": "assistant", "content": "hi"}], TOOLS)
    assert body["systemInstruction"] == {"parts": [{"text": "be terse"}]}
    assert [c["role"] for c in body["contents"]] == ["user", "model"]
    assert body["tools"][0]["functionDeclarations"][0]["name"] == "run_scan"

    data = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "ok"},
                        {"functionCall": {"name": "run_scan", "args": {"scan_type": "all"}}},
                    ]
                }
            }
        ]
    }
    assert adapter.parse_response(data) == "ok"
    [call] = adapter.parse_tool_calls(data)
    assert call.name == "run_scan"
    assert call.parsed_arguments() == {"scan_type": "all"}


def test_strip_code_fences():
    assert strip_code_fences("```js\nconst a = 1;\n```") == "const a = 1;"
    assert strip_code_fences("Here:\n```\nx = 1\n```\nthanks") == "x = 1"
    assert strip_code_fences("\n  plain text  \n") == "  plain text"


def test_client_complete_text_and_tool_calls():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": "fixed line",
                            "tool_calls": [
                                {"id": "call-1", "function": {"name": "run_scan", "arguments": '{"scan_type": "sqli"}'}}
                            ],
                        }
                    }
                ]
            },
        )

    client = LLMClient(_config(), transport=httpx.MockTransport(handler))
    response = asyncio.run(client.complete(MESSAGES, TOOLS))
    assert response.content == "fixed line"
    assert response.tool_calls[0].id == "call-1"
    assert response.tool_calls[0].parsed_arguments() == {"scan_type": "sqli"}
    assert str(seen[0].url) == "https://openrouter.ai/api/v1/chat/completions"
    assert json.loads(seen[0].content)["model"] == "test-model"

    assert asyncio.run(client.complete_text("sys", "user")) == "fixed line"


def test_client_errors_are_llm_errors():
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="rate limited")

    def empty(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})

    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    for handler, message in [(failing, "429"), (empty, "No content"), (not_json, "non-JSON"), (timeout, "timed out")]:
        client = LLMClient(_config(), transport=httpx.MockTransport(handler))
        with pytest.raises(LLMError, match=message):
            asyncio.run(client.complete(MESSAGES))


def test_client_requires_api_key():
    client = LLMClient(_config(api_key=None), transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with pytest.raises(LLMError, match="OPENROUTER_API_KEY"):
        asyncio.run(client.complete(MESSAGES))
