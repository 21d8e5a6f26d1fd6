from __future__ import annotations

from dataclasses import dataclass
import logging
from time import sleep
from typing import Protocol

import httpx

from docqa.services.retry import is_transient, next_delay

logger = logging.getLogger(__name__)

Message = dict[str, str]


class GenerationError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    def generate(self, messages: list[Message]) -> ChatResult: ...


class OpenAICompatibleChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str = "",
        api_key: str = "",
        temperature: float = 0.1,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._temperature = temperature
        self._timeout_seconds = timeout_seconds
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds

    def generate(self, messages: list[Message]) -> ChatResult:
        for model, used_fallback in self._model_candidates():
            try:
                content = self._with_retries(model, messages)
            except (httpx.HTTPError, ValueError) as exc:
                if used_fallback or not self._has_fallback():
                    raise GenerationError(str(exc)) from exc
                logger.warning("Model %s failed (%s); trying fallback %s", model, exc, self._fallback_model)
                continue

            return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        raise GenerationError("No model candidates configured")

    def _has_fallback(self) -> bool:
        return bool(self._fallback_model) and self._fallback_model != self._default_model

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._has_fallback():
            candidates.append((self._fallback_model, True))
        return candidates

    def _with_retries(self, model: str, messages: list[Message]) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._chat_completion(model=model, messages=messages)
            except httpx.HTTPError as exc:
                if not is_transient(exc) or attempt > self._max_retries:
                    raise
                delay = next_delay(
                    exc,
                    attempt,
                    base_seconds=self._retry_base_seconds,
                    max_seconds=self._retry_max_seconds,
                )
                logger.info(
                    "Chat completion failed model=%s attempt=%d error=%r; retrying in %.1fs",
                    model,
                    attempt,
                    exc,
                    delay,
                )
                sleep(delay)

    def _chat_completion(self, *, model: str, messages: list[Message]) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={
                "model": model,
                "messages": messages,
                "temperature": self._temperature,
            },
            headers=headers,
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content
