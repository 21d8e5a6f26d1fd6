from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
import logging
from threading import BoundedSemaphore
from time import sleep
from typing import Protocol

import httpx

from docqa.services.rag.types import DimensionMismatch
from docqa.services.retry import is_transient, next_delay

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """Embedding a text failed after all retries; carries the offending text."""

    def __init__(self, text: str, cause: BaseException) -> None:
        super().__init__(f"failed to embed text {text[:40]!r}: {cause}")
        self.text = text
        self.cause = cause


class EmbeddingClient(Protocol):
    @property
    def dimensions(self) -> int: ...

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]: ...

    def embed_query(self, text: str) -> list[float]: ...


class _InvalidPayload(ValueError):
    pass


class OpenAICompatibleEmbeddingClient:
    """Embeddings over an OpenAI-compatible ``/embeddings`` endpoint (OpenRouter, Ollama, ...).

    ``max_concurrency`` bounds the number of in-flight HTTP calls for the whole
    instance, so one shared client throttles every caller in the process.
    """

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        dimensions: int,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        max_concurrency: int = 1,
        batch_size: int = 1,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
    ) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self._base_url = base_url.rstrip("/")
        self._model = model
        self._dimensions = dimensions
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._max_concurrency = max_concurrency
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._retry_max_seconds = retry_max_seconds
        self._slots = BoundedSemaphore(max_concurrency)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model(self) -> str:
        return self._model

    def embed_query(self, text: str) -> list[float]:
        return self.embed_texts([text])[0]

    def embed_texts(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        batches = [
            list(texts[offset : offset + self._batch_size])
            for offset in range(0, len(texts), self._batch_size)
        ]
        logger.info(
            "Embedding %d text(s) in %d batch(es), max %d in flight",
            len(texts),
            len(batches),
            self._max_concurrency,
        )

        if len(batches) == 1:
            return self._embed_batch(batches[0])

        workers = min(self._max_concurrency, len(batches))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as executor:
            futures: list[Future[list[list[float]]]] = [
                executor.submit(self._embed_batch, batch) for batch in batches
            ]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = next((future for future in futures if future in done and future.exception()), None)
            if failed is not None:
                for future in pending:
                    future.cancel()
                raise failed.exception()  # type: ignore[misc]

        vectors: list[list[float]] = []
        for future in futures:
            vectors.extend(future.result())
        return vectors

    def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._slots:
                    return self._request(batch)
            except (httpx.HTTPError, _InvalidPayload) as exc:
                if not is_transient(exc) or attempt > self._max_retries:
                    logger.warning(
                        "Embedding request failed attempt=%d/%d error=%r",
                        attempt,
                        self._max_retries + 1,
                        exc,
                    )
                    raise EmbeddingError(batch[0], exc) from exc

                delay = next_delay(
                    exc,
                    attempt,
                    base_seconds=self._retry_base_seconds,
                    max_seconds=self._retry_max_seconds,
                )
                logger.info(
                    "Embedding request failed attempt=%d error=%r; retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )
                sleep(delay)

    def _request(self, batch: list[str]) -> list[list[float]]:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        response = httpx.post(
            f"{self._base_url}/embeddings",
            json={"model": self._model, "input": batch},
            headers=headers,
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as exc:
            raise _InvalidPayload("Invalid embeddings payload: body is not JSON") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise _InvalidPayload("Invalid embeddings payload: missing data")

        if all(isinstance(item, dict) and isinstance(item.get("index"), int) for item in data):
            data = sorted(data, key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise _InvalidPayload("Invalid embeddings payload: missing embedding vector")
            if len(embedding) != self._dimensions:
                raise DimensionMismatch(expected=self._dimensions, actual=len(embedding))
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(batch):
            raise _InvalidPayload(
                f"Invalid embeddings payload: expected {len(batch)} vectors, got {len(vectors)}"
            )

        return vectors
