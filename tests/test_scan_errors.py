from types import SimpleNamespace

import httpx
import openai
import pytest

from scan_errors import (
    FatalInferenceError,
    RateLimitedError,
    SchemaViolationError,
    TransientNetworkError,
    classify_error,
    format_error,
)

_REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def _response(status):
    return httpx.Response(status, request=_REQUEST)


def test_openai_rate_limit_is_rate_limited():
    exc = openai.RateLimitError("slow down", response=_response(429), body=None)
    out = classify_error(exc)
    assert isinstance(out, RateLimitedError)
    assert out.__cause__ is exc


@pytest.mark.parametrize(
    "exc",
    [
        openai.APITimeoutError(request=_REQUEST),
        openai.APIConnectionError(request=_REQUEST),
        openai.InternalServerError("upstream", response=_response(502), body=None),
        TimeoutError("invoke timeout after 120s"),
        ConnectionError("reset by peer"),
    ],
)
def test_transient_failures(exc):
    assert isinstance(classify_error(exc), TransientNetworkError)


def test_other_4xx_is_fatal():
    exc = openai.BadRequestError("invalid image", response=_response(400), body={"error": "bad"})
    out = classify_error(exc)
    assert isinstance(out, FatalInferenceError)
    assert out.status == 400


class _StatusError(Exception):
    def __init__(self, status):
        super().__init__(f"upstream said {status}")
        self.response = SimpleNamespace(status_code=status)


def test_status_attribute_and_message_heuristics():
    assert isinstance(classify_error(_StatusError(503)), TransientNetworkError)
    assert isinstance(classify_error(RuntimeError("429 Too Many Requests")), RateLimitedError)
    assert isinstance(classify_error(RuntimeError("provider quota exceeded")), RateLimitedError)
    assert isinstance(classify_error(RuntimeError("ECONNRESET while reading")), TransientNetworkError)
    assert isinstance(classify_error(RuntimeError("something odd")), FatalInferenceError)


def test_classified_errors_pass_through():
    err = SchemaViolationError("not json")
    assert classify_error(err) is err


def test_format_error_includes_cause_chain():
    out = classify_error(openai.RateLimitError("slow down", response=_response(429), body={"code": 429}))
    text = format_error(out)
    assert text.startswith("RateLimitedError")
    assert "status=429" in text
    assert "cause=RateLimitError" in text
