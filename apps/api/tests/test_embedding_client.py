from threading import Lock, Thread
from time import sleep

import httpx
import pytest

from docqa.services.rag.embedding_client import EmbeddingError, OpenAICompatibleEmbeddingClient
from docqa.services.rag.types import DimensionMismatch


class _FakeResponse:
    def __init__(
        self,
        payload: dict[str, object],
        *,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> None:
        self._payload = payload
        self.status_code = status_code
        self._headers = headers or {}

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://openrouter.test/api/v1/embeddings")
            response = httpx.Response(self.status_code, request=request, headers=self._headers)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> dict[str, object]:
        return self._payload


def _vector_for(text: str) -> list[float]:
    return [float(len(text)), 1.0, 0.0]


def _client(**overrides: object) -> OpenAICompatibleEmbeddingClient:
    options: dict[str, object] = {
        "base_url": "https://openrouter.test/api/v1/",
        "model": "openai/text-embedding-3-small",
        "dimensions": 3,
        "retry_base_seconds": 0.0,
        "retry_max_seconds": 0.0,
    }
    options.update(overrides)
    return OpenAICompatibleEmbeddingClient(**options)  # type: ignore[arg-type]


def test_embed_texts_posts_to_embeddings_endpoint(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        captured["url"] = url
        captured["json"] = json
        captured["headers"] = headers
        captured["timeout"] = timeout
        return _FakeResponse(
            {
                "data": [
                    {"index": 1, "embedding": [4.5, 5.0, 6.25]},
                    {"index": 0, "embedding": [1, 2, 3]},
                ]
            }
        )

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    client = _client(api_key="secret", batch_size=2, timeout_seconds=12)
    vectors = client.embed_texts(["first", "second"])

    assert vectors == [[1.0, 2.0, 3.0], [4.5, 5.0, 6.25]]
    assert captured["url"] == "https://openrouter.test/api/v1/embeddings"
    assert captured["json"] == {
        "model": "openai/text-embedding-3-small",
        "input": ["first", "second"],
    }
    assert captured["headers"] == {"Authorization": "Bearer secret"}
    assert captured["timeout"] == 12


def test_embed_texts_of_empty_input_makes_no_request(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(*args: object, **kwargs: object) -> _FakeResponse:
        raise AssertionError("no request expected")

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    assert _client().embed_texts([]) == []


def test_embed_texts_preserves_order_across_concurrent_batches(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        texts = json["input"]
        assert isinstance(texts, list)
        # Shorter texts answer later so completion order differs from input order.
        sleep(0.001 * (10 - len(texts[0])))
        return _FakeResponse({"data": [{"index": 0, "embedding": _vector_for(texts[0])}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    texts = ["a", "bb", "ccc", "dddd", "eeeee"]
    vectors = _client(max_concurrency=3).embed_texts(texts)

    assert vectors == [_vector_for(text) for text in texts]


def test_in_flight_requests_never_exceed_max_concurrency(monkeypatch: pytest.MonkeyPatch) -> None:
    lock = Lock()
    state = {"in_flight": 0, "peak": 0}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        with lock:
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
        sleep(0.01)
        with lock:
            state["in_flight"] -= 1
        texts = json["input"]
        assert isinstance(texts, list)
        return _FakeResponse({"data": [{"index": 0, "embedding": _vector_for(texts[0])}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    client = _client(max_concurrency=2)
    vectors = client.embed_texts([f"text-{index}" for index in range(8)])

    assert len(vectors) == 8
    assert 1 <= state["peak"] <= 2


def test_rate_limited_request_is_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        calls["count"] += 1
        if calls["count"] == 1:
            return _FakeResponse({}, status_code=429, headers={"Retry-After": "0"})
        return _FakeResponse({"data": [{"index": 0, "embedding": [1, 0, 0]}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    assert _client(max_retries=2).embed_query("hello") == [1.0, 0.0, 0.0]
    assert calls["count"] == 2


def test_exhausted_retries_raise_embedding_error_with_text(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        calls["count"] += 1
        return _FakeResponse({}, status_code=503)

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(EmbeddingError) as exc_info:
        _client(max_retries=2).embed_texts(["broken text"])

    assert exc_info.value.text == "broken text"
    assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)
    assert calls["count"] == 3


def test_client_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"count": 0}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        calls["count"] += 1
        return _FakeResponse({}, status_code=401)

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(EmbeddingError):
        _client(max_retries=3).embed_texts(["text"])
    assert calls["count"] == 1


def test_one_failed_batch_fails_the_whole_call(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        texts = json["input"]
        assert isinstance(texts, list)
        if texts[0] == "bad":
            return _FakeResponse({}, status_code=400)
        return _FakeResponse({"data": [{"index": 0, "embedding": _vector_for(texts[0])}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(EmbeddingError) as exc_info:
        _client(max_concurrency=2).embed_texts(["good", "bad", "fine", "okay"])
    assert exc_info.value.text == "bad"


def test_payload_size_mismatch_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        return _FakeResponse({"data": [{"index": 0, "embedding": [1, 2, 3]}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(EmbeddingError, match="expected 2 vectors"):
        _client(batch_size=2).embed_texts(["first", "second"])


def test_wrong_vector_dimension_raises_dimension_mismatch(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        return _FakeResponse({"data": [{"index": 0, "embedding": [1, 2]}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    with pytest.raises(DimensionMismatch) as exc_info:
        _client().embed_query("text")
    assert (exc_info.value.expected, exc_info.value.actual) == (3, 2)


@pytest.mark.parametrize("max_concurrency", [1, 2])
def test_concurrent_callers_share_the_in_flight_limit(
    monkeypatch: pytest.MonkeyPatch,
    max_concurrency: int,
) -> None:
    lock = Lock()
    state = {"in_flight": 0, "peak": 0}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str], timeout: float) -> _FakeResponse:
        with lock:
            state["in_flight"] += 1
            state["peak"] = max(state["peak"], state["in_flight"])
        sleep(0.02)
        with lock:
            state["in_flight"] -= 1
        texts = json["input"]
        assert isinstance(texts, list)
        return _FakeResponse({"data": [{"index": 0, "embedding": _vector_for(texts[0])}]})

    monkeypatch.setattr("docqa.services.rag.embedding_client.httpx.post", fake_post)

    client = _client(max_concurrency=max_concurrency)
    results: dict[str, object] = {}

    def ingest_document(name: str) -> None:
        results[name] = client.embed_texts([f"{name}-{index}" for index in range(3)])

    def ask_question() -> None:
        results["query"] = client.embed_query("question")

    threads = [
        Thread(target=ingest_document, args=("doc-a",)),
        Thread(target=ingest_document, args=("doc-b",)),
        Thread(target=ask_question),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert state["peak"] <= max_concurrency
    assert results["query"] == _vector_for("question")
    assert results["doc-a"] == [_vector_for(f"doc-a-{index}") for index in range(3)]
    assert results["doc-b"] == [_vector_for(f"doc-b-{index}") for index in range(3)]
