import httpx
import pytest

from docqa.services.retry import is_transient, next_delay


def _status_error(status_code: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://openrouter.test/api/v1/embeddings")
    response = httpx.Response(status_code, request=request, headers=headers or {})
    return httpx.HTTPStatusError("request failed", request=request, response=response)


@pytest.mark.parametrize("status_code", [408, 425, 429, 500, 502, 503])
def test_rate_limits_and_server_errors_are_transient(status_code: int) -> None:
    assert is_transient(_status_error(status_code))


@pytest.mark.parametrize("status_code", [400, 401, 403, 404, 409, 422])
def test_client_errors_are_not_transient(status_code: int) -> None:
    assert not is_transient(_status_error(status_code))


def test_transport_errors_are_transient() -> None:
    request = httpx.Request("POST", "https://openrouter.test/api/v1/embeddings")

    assert is_transient(httpx.ConnectError("connection refused", request=request))


def test_retry_after_header_caps_the_delay() -> None:
    error = _status_error(429, {"Retry-After": "120"})

    assert next_delay(error, 1, base_seconds=1.0, max_seconds=30.0) == 30.0
    assert next_delay(_status_error(429, {"Retry-After": "2"}), 1, base_seconds=1.0, max_seconds=30.0) == 2.0
