from __future__ import annotations

import logging
import os
import queue
import threading
import time
from pathlib import Path
from typing import Any, Iterator, Protocol

import openai
from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import (
    GenerationConnectionError,
    GenerationError,
    GenerationHttpError,
    GenerationParseError,
    GenerationStreamError,
    GenerationTimeout,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_PROGRESS_INTERVAL_SECONDS = 10.0
_LOCAL_API_KEY = "not-needed"


class Generator(Protocol):
    """Text-generation backend used by the orchestration engine.

    Each call is an independent request; implementations must not rely on
    earlier calls for state.
    """

    def generate(self, system_prompt: str | None, user_prompt: str, *, stream: bool = False) -> str:
        ...


class SupportsChat(Protocol):
    """Protocol for a LangChain chat model that can invoke and stream."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...

    def stream(self, input: Any) -> Iterator[Any]:  # noqa: ANN401 - external runnable protocol.
        ...


def ensure_api_key(repo_root: Path | None = None, *, required: bool = True) -> str:
    """Load OPENAI_API_KEY from environment or ``.env`` and return it.

    Args:
        repo_root: Directory searched for a ``.env`` file (cwd if None).
        required: Whether a missing key is an error. Local OpenAI-compatible
            servers such as Ollama accept any key.

    Raises:
        RuntimeError: If the key is required and unavailable.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        if required:
            raise RuntimeError("OPENAI_API_KEY is required when no custom backend base URL is configured")
        return _LOCAL_API_KEY
    return key


def get_chat_model(settings: RuntimeSettings, *, repo_root: Path | None = None) -> ChatOpenAI:
    """Construct a ChatOpenAI client for the configured OpenAI-compatible backend."""
    api_key = ensure_api_key(repo_root=repo_root, required=not settings.base_url)
    kwargs: dict[str, Any] = {
        "model": settings.model,
        "temperature": settings.temperature,
        "timeout": settings.timeout_seconds,
        "max_retries": settings.max_retries,
        "api_key": api_key,
    }
    if settings.base_url:
        kwargs["base_url"] = settings.base_url
    return ChatOpenAI(**kwargs)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    raise GenerationParseError(f"Unsupported message content type: {type(content).__name__}")


def translate_backend_error(exc: BaseException, timeout_seconds: float) -> GenerationError:
    """Map client-library exceptions onto the generation error taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, openai.APITimeoutError):
        return GenerationTimeout(timeout_seconds, str(exc))
    if isinstance(exc, openai.APIConnectionError):
        return GenerationConnectionError(f"Cannot reach generation backend: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return GenerationHttpError(exc.status_code, exc.message)
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return GenerationParseError(f"Malformed backend response: {exc}")
    return GenerationStreamError(f"{type(exc).__name__}: {exc}")


class ChatGenerator:
    """``Generator`` backed by a LangChain chat model, with a stall watchdog for streams."""

    def __init__(
        self,
        model: SupportsChat,
        *,
        timeout_seconds: float = 300,
        stall_timeout_seconds: float = 120,
    ) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.stall_timeout_seconds = stall_timeout_seconds

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "ChatGenerator":
        return cls(
            get_chat_model(settings, repo_root=repo_root),
            timeout_seconds=settings.timeout_seconds,
            stall_timeout_seconds=settings.stall_timeout_seconds,
        )

    def generate(self, system_prompt: str | None, user_prompt: str, *, stream: bool = False) -> str:
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=user_prompt))
        started = time.monotonic()
        try:
            text = self._stream(messages) if stream else _content_text(self.model.invoke(messages).content)
        except GenerationError:
            raise
        except Exception as exc:  # noqa: BLE001 - normalized into GenerationError below.
            raise translate_backend_error(exc, self.timeout_seconds) from exc
        if not text.strip():
            raise GenerationParseError("Generation backend returned an empty response")
        logger.info("Generated %d chars in %.1fs", len(text), time.monotonic() - started)
        return text

    def _stream(self, messages: list[BaseMessage]) -> str:
        # The worker cannot be interrupted once started; an abandoned stream
        # finishes in the background and its output is discarded.
        events: queue.Queue[tuple[str, Any]] = queue.Queue()

        def pump() -> None:
            try:
                for chunk in self.model.stream(messages):
                    events.put(("chunk", _content_text(getattr(chunk, "content", chunk))))
            except Exception as exc:  # noqa: BLE001 - relayed to the consuming thread.
                events.put(("error", exc))
            else:
                events.put(("done", None))

        threading.Thread(target=pump, name="worksplit-stream", daemon=True).start()

        parts: list[str] = []
        started = time.monotonic()
        last_report = started
        while True:
            try:
                kind, payload = events.get(timeout=self.stall_timeout_seconds)
            except queue.Empty:
                raise GenerationTimeout(self.stall_timeout_seconds, "no tokens received") from None
            if kind == "error":
                if isinstance(payload, GenerationError):
                    raise payload
                raise translate_backend_error(payload, self.timeout_seconds) from payload
            if kind == "done":
                return "".join(parts)
            parts.append(payload)
            now = time.monotonic()
            if now - started > self.timeout_seconds:
                raise GenerationTimeout(self.timeout_seconds, "request deadline exceeded while streaming")
            if now - last_report >= _PROGRESS_INTERVAL_SECONDS:
                logger.info("Still generating: %d chars after %.0fs", sum(len(part) for part in parts), now - started)
                last_report = now
