from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest
from aiohttp import test_utils, web


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from context_engine.errors import EmbeddingError, ProviderPermanentError, ProviderTransientError  # noqa: E402
from context_engine.providers.embeddings import OllamaEmbeddingClient, OpenAIEmbeddingClient  # noqa: E402
from context_engine.providers.gemini_client import GeminiClient  # noqa: E402
from context_engine.providers.ollama_chat_client import OllamaChatClient  # noqa: E402
from context_engine.providers.openai_compat_client import OpenAICompatibleClient  # noqa: E402

_MESSAGES = [
    {"role": "system", "content": "You are a pirate."},
    {"role": "system", "content": "Recalled context: the boat is called Wave."},
    {"role": "user", "content": "Hello"},
    {"role": "assistant", "content": "Ahoy"},
    {"role": "tool", "content": "odd role"},
    {"role": "user", "content": "   "},
]


def _capture(client: Any, response: Dict[str, Any]) -> Dict[str, Any]:
    captured: Dict[str, Any] = {}

    async def _fake_post_json(url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        captured["url"] = url
        captured["payload"] = payload
        return response

    client._post_json = _fake_post_json  # type: ignore[method-assign]
    return captured


def test_gemini_maps_roles_and_merges_system_prompts() -> None:
    client = GeminiClient(
        api_key="secret",
        model="gemini-2.0-flash",
        timeout_seconds=10,
        temperature=0.4,
        max_output_tokens=256,
    )
    captured = _capture(client, {"candidates": [{"content": {"parts": [{"text": " Arr "}, {"text": "matey"}]}}]})

    text = asyncio.run(client.chat(_MESSAGES))

    assert text == "Arr\nmatey"
    assert captured["url"].endswith("/v1beta/models/gemini-2.0-flash:generateContent?key=secret")
    payload = captured["payload"]
    assert payload["systemInstruction"]["parts"][0]["text"] == (
        "You are a pirate.\n\nRecalled context: the boat is called Wave."
    )
    assert [item["role"] for item in payload["contents"]] == ["user", "model", "user"]
    assert payload["generationConfig"] == {"temperature": 0.4, "maxOutputTokens": 256}


def test_gemini_blocked_or_empty_response_is_permanent() -> None:
    client = GeminiClient(api_key="k", model="m", timeout_seconds=10, temperature=0.4, max_output_tokens=0)

    _capture(client, {"promptFeedback": {"blockReason": "SAFETY"}})
    with pytest.raises(ProviderPermanentError, match="SAFETY"):
        asyncio.run(client.chat(_MESSAGES))

    _capture(client, {"candidates": [{"content": {"parts": []}, "finishReason": "MAX_TOKENS"}]})
    with pytest.raises(ProviderPermanentError, match="MAX_TOKENS"):
        asyncio.run(client.chat(_MESSAGES))


def test_ollama_payload_uses_options_and_strips_reasoning() -> None:
    client = OllamaChatClient(base_url="http://ollama:11434/", model="qwen3:8b", temperature=0.3, max_output_tokens=128)
    captured = _capture(client, {"message": {"content": "<think>hidden</think>\nAhoy there"}})

    text = asyncio.run(client.chat(_MESSAGES, temperature=0.9))

    assert text == "Ahoy there"
    assert captured["url"] == "http://ollama:11434/api/chat"
    payload = captured["payload"]
    assert payload["model"] == "qwen3:8b"
    assert payload["stream"] is False
    assert payload["options"] == {"temperature": 0.9, "num_predict": 128}
    assert [item["role"] for item in payload["messages"]] == ["system", "system", "user", "assistant", "user"]


def test_ollama_rejects_reasoning_only_reply() -> None:
    client = OllamaChatClient(base_url="http://ollama:11434", model="qwen3:8b")
    _capture(client, {"message": {"content": "<think>only thoughts</think>"}})

    with pytest.raises(ProviderPermanentError):
        asyncio.run(client.chat(_MESSAGES))


def test_ollama_requires_model() -> None:
    with pytest.raises(ValueError):
        OllamaChatClient(base_url="http://ollama:11434", model="  ")


def test_openai_compatible_payload_and_headers() -> None:
    client = OpenAICompatibleClient(
        "openrouter",
        api_key="sk-test",
        model="meta-llama/llama-3.1-8b-instruct",
        timeout_seconds=10,
        temperature=0.7,
        max_output_tokens=300,
        extra_headers={"X-Title": "context-engine"},
    )
    captured = _capture(client, {"choices": [{"message": {"content": " Hello back "}}]})

    text = asyncio.run(client.chat(_MESSAGES, max_output_tokens=50))

    assert text == "Hello back"
    assert captured["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert captured["payload"]["max_tokens"] == 50
    assert captured["payload"]["temperature"] == 0.7
    assert client._headers() == {"Authorization": "Bearer sk-test", "X-Title": "context-engine"}


def test_openai_compatible_needs_base_url_for_unknown_provider() -> None:
    with pytest.raises(ValueError):
        OpenAICompatibleClient("custom", api_key="k", model="m", timeout_seconds=10, temperature=0.5, max_output_tokens=0)


def test_openai_compatible_empty_choices_are_permanent() -> None:
    client = OpenAICompatibleClient("deepseek", api_key="k", model="deepseek-chat", timeout_seconds=10, temperature=0.5, max_output_tokens=0)
    _capture(client, {"choices": []})

    with pytest.raises(ProviderPermanentError):
        asyncio.run(client.chat(_MESSAGES))


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (429, "slow down", ProviderTransientError),
        (503, "overloaded", ProviderTransientError),
        (401, "bad key", ProviderPermanentError),
        (400, "bad request", ProviderPermanentError),
        (200, "not json", ProviderPermanentError),
    ],
)
def test_http_failures_are_classified(status: int, body: str, expected: type) -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(status=status, text=body)

    async def scenario() -> None:
        app = web.Application()
        app.router.add_post("/v1/chat/completions", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        client = OpenAICompatibleClient(
            "openai",
            api_key="k",
            model="gpt-4o-mini",
            timeout_seconds=5,
            temperature=0.5,
            max_output_tokens=0,
            base_url=str(server.make_url("/v1")),
        )
        try:
            with pytest.raises(expected):
                await client.chat([{"role": "user", "content": "hi"}])
        finally:
            await client.close()
            await server.close()

    asyncio.run(scenario())


def test_connection_refused_is_transient() -> None:
    async def scenario() -> None:
        server = test_utils.TestServer(web.Application())
        await server.start_server()
        base_url = str(server.make_url("/v1"))
        await server.close()

        client = OpenAICompatibleClient(
            "openai",
            api_key="k",
            model="gpt-4o-mini",
            timeout_seconds=5,
            temperature=0.5,
            max_output_tokens=0,
            base_url=base_url,
        )
        try:
            with pytest.raises(ProviderTransientError):
                await client.chat([{"role": "user", "content": "hi"}])
        finally:
            await client.close()

    asyncio.run(scenario())


def test_ollama_embedding_accepts_both_response_shapes() -> None:
    client = OllamaEmbeddingClient(base_url="http://ollama:11434", model="nomic-embed-text")
    calls: List[Dict[str, Any]] = []
    responses = [{"embeddings": [[0.1, 0.2]]}, {"embedding": [0.3, 0.4]}]

    async def _fake_post_json(url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        calls.append({"url": url, "payload": payload})
        return responses.pop(0)

    client._post_json = _fake_post_json  # type: ignore[method-assign]

    async def scenario() -> None:
        assert await client.embed("hello") == [0.1, 0.2]
        assert await client.embed("again") == [0.3, 0.4]

    asyncio.run(scenario())
    assert calls[0] == {"url": "http://ollama:11434/api/embed", "payload": {"model": "nomic-embed-text", "input": "hello"}}


def test_openai_embedding_without_data_raises() -> None:
    client = OpenAIEmbeddingClient(api_key="k")
    captured = _capture(client, {"data": []})

    with pytest.raises(EmbeddingError):
        asyncio.run(client.embed("hello"))
    assert captured["url"] == "https://api.openai.com/v1/embeddings"
