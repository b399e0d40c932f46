import asyncio
import json

import httpx
import pytest

from vibey.config import ModelConfig
from vibey.exceptions import Cancelled, LLMAPIError, LLMError
from vibey.llm import (
    Message,
    OllamaBackend,
    OpenAICompatibleBackend,
    TokenUsage,
    create_backend,
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_ollama_chat_posts_history_and_reports_usage():
    seen: list[httpx.Request] = []
    usage: list[TokenUsage] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"message": {"role": "assistant", "content": "hello"}, "prompt_eval_count": 10, "eval_count": 5},
        )

    backend = OllamaBackend(
        model="qwen",
        base_url="http://ollama:11434/",
        temperature=0.2,
        usage_sink=usage.append,
        client=_client(handler),
    )

    reply = await backend.chat([Message("system", "be brief"), Message("user", "hi")])

    assert reply == "hello"
    assert str(seen[0].url) == "http://ollama:11434/api/chat"
    body = json.loads(seen[0].content)
    assert body == {
        "model": "qwen",
        "messages": [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        "stream": False,
        "options": {"temperature": 0.2},
    }
    assert usage == [TokenUsage(prompt_tokens=10, completion_tokens=5)]


@pytest.mark.asyncio
async def test_ollama_http_error_raises_api_error():
    backend = OllamaBackend(client=_client(lambda request: httpx.Response(404, text="model not found")))

    with pytest.raises(LLMAPIError) as exc_info:
        await backend.chat([Message("user", "hi")])

    assert exc_info.value.status_code == 404
    assert "model not found" in str(exc_info.value)


@pytest.mark.asyncio
async def test_ollama_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": "llama3.2"}, {"name": "qwen"}]})

    backend = OllamaBackend(client=_client(handler))

    assert await backend.list_models() == ["llama3.2", "qwen"]


def test_openai_format_messages_enforces_alternation():
    formatted = OpenAICompatibleBackend.format_messages(
        [
            Message("system", "sys"),
            Message("user", "task"),
            Message("assistant", "call tool"),
            Message("tool", {"status": "success"}),
            Message("tool", "second"),
        ]
    )

    assert formatted == [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "task"},
        {"role": "assistant", "content": "call tool"},
        {"role": "user", "content": '[Tool Result]: {"status": "success"}'},
        {"role": "assistant", "content": "[...]"},
        {"role": "user", "content": "[Tool Result]: second"},
    ]


@pytest.mark.asyncio
async def test_openai_chat_sends_bearer_and_retries_server_errors():
    attempts: list[httpx.Request] = []
    usage: list[TokenUsage] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(503, text="warming up")
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "done"}}],
                "usage": {"prompt_tokens": 7, "completion_tokens": 3},
            },
        )

    backend = OpenAICompatibleBackend(
        model="coder",
        base_url="http://llm:8080/v1",
        api_key="secret",
        retry_delay=0,
        usage_sink=usage.append,
        client=_client(handler),
    )

    assert await backend.chat([Message("user", "hi")]) == "done"
    assert len(attempts) == 2
    assert attempts[1].url.path == "/v1/chat/completions"
    assert attempts[1].headers["Authorization"] == "Bearer secret"
    assert usage == [TokenUsage(prompt_tokens=7, completion_tokens=3)]


@pytest.mark.asyncio
async def test_openai_client_errors_are_not_retried():
    attempts: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, text="bad request")

    backend = OpenAICompatibleBackend(retry_delay=0, client=_client(handler))

    with pytest.raises(LLMAPIError) as exc_info:
        await backend.chat([Message("user", "hi")])

    assert exc_info.value.status_code == 400
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_openai_empty_choices_is_an_error():
    backend = OpenAICompatibleBackend(client=_client(lambda request: httpx.Response(200, json={"choices": []})))

    with pytest.raises(LLMError):
        await backend.chat([Message("user", "hi")])


@pytest.mark.asyncio
async def test_abort_event_cancels_in_flight_request():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(30)
        return httpx.Response(200, json={"message": {"content": "late"}})

    backend = OllamaBackend(client=_client(handler))
    abort = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, abort.set)

    with pytest.raises(Cancelled):
        await backend.chat([Message("user", "hi")], abort_event=abort)


@pytest.mark.asyncio
async def test_already_set_abort_event_skips_request():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"message": {"content": "x"}})

    abort = asyncio.Event()
    abort.set()
    backend = OllamaBackend(client=_client(handler))

    with pytest.raises(Cancelled):
        await backend.chat([Message("user", "hi")], abort_event=abort)
    assert calls == []


def test_create_backend_selects_provider():
    ollama = create_backend(ModelConfig(provider="ollama", model="llama3.2"))
    openai = create_backend(ModelConfig(provider="openai-compatible", model="coder", base_url="http://llm/v1"))

    assert isinstance(ollama, OllamaBackend)
    assert ollama.base_url == "http://localhost:11434"
    assert isinstance(openai, OpenAICompatibleBackend)
    assert openai.base_url == "http://llm/v1"
