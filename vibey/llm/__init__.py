"""LLM backends - direct HTTP calls to Ollama and OpenAI-compatible servers."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from vibey.config import ModelConfig
from vibey.exceptions import Cancelled, LLMAPIError, LLMError
from vibey.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

OLLAMA_NATIVE_BASE_URL = "http://localhost:11434"
OPENAI_COMPATIBLE_BASE_URL = "http://localhost:11434/v1"


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: Any

    def text(self) -> str:
        """Content as text; structured payloads are JSON-encoded."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False, default=str)


@dataclass
class TokenUsage:
    """Token counts reported by one backend call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


UsageSink = Callable[[TokenUsage], None]


class LLMBackend(ABC):
    """Narrow interface the orchestrator talks to."""

    usage_sink: UsageSink | None = None

    @abstractmethod
    async def chat(self, messages: list[Message], abort_event: asyncio.Event | None = None) -> str:
        """Send the full history and return the model's raw text reply.

        Raises:
            Cancelled if ``abort_event`` fires before the reply arrives
            LLMAPIError / LLMError on transport failures
        """
        pass

    async def list_models(self) -> list[str]:
        return []

    async def close(self) -> None:
        pass

    def _report_usage(self, usage: TokenUsage) -> None:
        if self.usage_sink is None:
            return
        try:
            self.usage_sink(usage)
        except Exception as e:
            log.warning("Usage sink failed", error=str(e))


async def race_abort(work: Awaitable[T], abort_event: asyncio.Event | None) -> T:
    """Await ``work`` unless ``abort_event`` fires first, then cancel it."""
    if abort_event is None:
        return await work
    if abort_event.is_set():
        if asyncio.iscoroutine(work):
            work.close()
        raise Cancelled("Request cancelled by user")

    work_task = asyncio.ensure_future(work)
    abort_task = asyncio.create_task(abort_event.wait())
    try:
        done, _ = await asyncio.wait(
            {work_task, abort_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work_task in done:
            return work_task.result()
        work_task.cancel()
        try:
            await work_task
        except asyncio.CancelledError:
            pass
        except Exception:
            log.debug("Backend call failed after abort")
        raise Cancelled("Request cancelled by user")
    finally:
        for task in (work_task, abort_task):
            if not task.done():
                task.cancel()


class _HttpBackend(LLMBackend):
    """Shared httpx plumbing for HTTP backends."""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str | None = None,
        temperature: float | None = None,
        timeout: float = 300.0,
        usage_sink: UsageSink | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.timeout = timeout
        self.usage_sink = usage_sink
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise LLMAPIError(f"Request to {url} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LLMAPIError(f"HTTP error calling {url}: {e}") from e

        if not response.is_success:
            raise LLMAPIError(
                f"API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise LLMError(f"Response decode error: {e}") from e

    async def _get_json(self, url: str) -> dict[str, Any]:
        response = await self.client.get(url, headers=self._headers())
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


class OllamaBackend(_HttpBackend):
    """Ollama ``/api/chat`` backend."""

    def __init__(self, model: str = "llama3.2", base_url: str = OLLAMA_NATIVE_BASE_URL, **kwargs: Any):
        super().__init__(model=model, base_url=base_url or OLLAMA_NATIVE_BASE_URL, **kwargs)

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        return [{"role": msg.role, "content": msg.text()} for msg in messages]

    async def chat(self, messages: list[Message], abort_event: asyncio.Event | None = None) -> str:
        url = f"{self.base_url}/api/chat"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": False,
        }
        if self.temperature is not None:
            body["options"] = {"temperature": self.temperature}

        log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(messages))
        data = await race_abort(self._post_json(url, body), abort_event)

        usage = TokenUsage(
            prompt_tokens=int(data.get("prompt_eval_count") or 0),
            completion_tokens=int(data.get("eval_count") or 0),
        )
        log.info(
            "Ollama response",
            model=self.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        self._report_usage(usage)
        return str((data.get("message") or {}).get("content") or "")

    async def list_models(self) -> list[str]:
        try:
            data = await self._get_json(f"{self.base_url}/api/tags")
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            log.warning("Failed to list models", error=str(e))
            return []
        return [str(item.get("name")) for item in data.get("models", []) if item.get("name")]


class OpenAICompatibleBackend(_HttpBackend):
    """``/chat/completions`` backend (llama.cpp, vLLM, LM Studio, OpenAI)."""

    def __init__(
        self,
        model: str = "Qwen3-coder:latest",
        base_url: str = OPENAI_COMPATIBLE_BASE_URL,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        **kwargs: Any,
    ):
        super().__init__(model=model, base_url=base_url or OPENAI_COMPATIBLE_BASE_URL, **kwargs)
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay

    @staticmethod
    def format_messages(messages: list[Message]) -> list[dict[str, str]]:
        """Rewrite history for servers that require strict user/assistant alternation.

        The system message goes first; tool results become user messages with a
        ``[Tool Result]:`` prefix; a placeholder turn separates consecutive
        messages of the same role.
        """
        formatted: list[dict[str, str]] = []
        system = next((msg for msg in messages if msg.role == "system"), None)
        if system is not None:
            formatted.append({"role": "system", "content": system.text()})

        last_role: str | None = None
        for msg in messages:
            if msg.role == "system":
                continue
            if msg.role == "tool":
                role, content = "user", f"[Tool Result]: {msg.text()}"
            else:
                role, content = msg.role, msg.text()
            if role == last_role:
                formatted.append({"role": "assistant" if role == "user" else "user", "content": "[...]"})
            formatted.append({"role": role, "content": content})
            last_role = role
        return formatted

    async def _complete_with_retry(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        attempt = 0
        while True:
            try:
                return await self._post_json(url, body)
            except LLMAPIError as e:
                retryable = e.status_code is None or e.status_code >= 500
                if not retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                log.warning("Retrying LLM request", attempt=attempt, error=str(e))
                await asyncio.sleep(self.retry_delay * attempt)

    async def chat(self, messages: list[Message], abort_event: asyncio.Event | None = None) -> str:
        url = f"{self.base_url}/chat/completions"
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self.format_messages(messages),
            "stream": False,
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature

        log.debug("Calling OpenAI-compatible endpoint", model=self.model, url=url, msg_count=len(messages))
        data = await race_abort(self._complete_with_retry(url, body), abort_event)

        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Response contained no choices")
        raw_usage = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
            completion_tokens=int(raw_usage.get("completion_tokens") or 0),
        )
        log.info(
            "OpenAI-compatible response",
            model=self.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
        )
        if raw_usage:
            self._report_usage(usage)
        return str((choices[0].get("message") or {}).get("content") or "")

    async def list_models(self) -> list[str]:
        try:
            data = await self._get_json(f"{self.base_url}/models")
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            log.warning("Failed to list models", error=str(e))
            return []
        return [str(item.get("id")) for item in data.get("data", []) if item.get("id")]


def create_backend(config: ModelConfig, usage_sink: UsageSink | None = None) -> LLMBackend:
    """Create an LLM backend from model configuration."""
    common: dict[str, Any] = {
        "api_key": config.api_key or None,
        "temperature": config.temperature,
        "timeout": config.timeout,
        "usage_sink": usage_sink,
    }
    if config.provider == "ollama":
        return OllamaBackend(model=config.model, base_url=config.base_url or OLLAMA_NATIVE_BASE_URL, **common)
    if config.provider == "openai-compatible":
        return OpenAICompatibleBackend(
            model=config.model,
            base_url=config.base_url or OPENAI_COMPATIBLE_BASE_URL,
            **common,
        )
    raise ValueError(f"Provider '{config.provider}' not supported. Use 'ollama' or 'openai-compatible'.")
