"""
Error taxonomy for inference calls.

Every failure coming out of the inference client is mapped onto one of three
classes before the pool sees it:

- RateLimitedError: the account is throttled. Opens the pool's global backoff
  window and is retried without consuming an attempt.
- TransientNetworkError: 5xx, timeouts, dropped connections. Retried with
  exponential delay up to the pool's attempt cap.
- FatalInferenceError: validation problems and 4xx other than 429. Propagates
  immediately and fails that single call only.

Partial failures of a region or kind are not exceptions; they are counted in
detection_types.RunReport.
"""

import json
from typing import Any, Optional

import openai


class InferenceError(Exception):
    """Base class for classified inference failures."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RateLimitedError(InferenceError):
    pass


class TransientNetworkError(InferenceError):
    pass


class FatalInferenceError(InferenceError):
    pass


class SchemaViolationError(FatalInferenceError):
    """The model answered, but not in the shape the call asked for."""


_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "429", "too many requests", "quota")
_TRANSIENT_MARKERS = ("timeout", "timed out", "econnreset", "etimedout", "connection reset", "connection aborted")


def _status_of(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "http_status"):
        val = getattr(exc, attr, None)
        if isinstance(val, int):
            return val
    response = getattr(exc, "response", None)
    val = getattr(response, "status_code", None)
    return val if isinstance(val, int) else None


def classify_error(exc: BaseException) -> InferenceError:
    """Map any exception raised by an inference call onto the taxonomy.

    Already-classified errors are returned unchanged. The returned error keeps
    the original as its __cause__ so format_error can show the chain.
    """
    if isinstance(exc, InferenceError):
        return exc

    message = f"{exc.__class__.__name__}: {exc}"
    status = _status_of(exc)

    if isinstance(exc, openai.RateLimitError) or status == 429:
        out: InferenceError = RateLimitedError(message, status=429)
    elif isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, TimeoutError, ConnectionError)):
        out = TransientNetworkError(message, status=status)
    elif isinstance(exc, openai.InternalServerError) or (status is not None and 500 <= status < 600):
        out = TransientNetworkError(message, status=status)
    elif isinstance(exc, openai.APIStatusError) or (status is not None and 400 <= status < 500):
        out = FatalInferenceError(message, status=status)
    else:
        lowered = str(exc).lower()
        if any(m in lowered for m in _RATE_LIMIT_MARKERS):
            out = RateLimitedError(message, status=status)
        elif any(m in lowered for m in _TRANSIENT_MARKERS):
            out = TransientNetworkError(message, status=status)
        else:
            out = FatalInferenceError(message, status=status)
    out.__cause__ = exc
    return out


def _safe_dump(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def format_error(exc: BaseException, _depth: int = 0) -> str:
    """One-line diagnostic for log lines: name, message, status, code, cause chain."""
    parts = [f"{exc.__class__.__name__}: {exc}"]
    code = getattr(exc, "code", None)
    if code:
        parts.append(f"code={code}")
    status = _status_of(exc)
    if status is not None:
        parts.append(f"status={status}")
    body = getattr(exc, "body", None)
    if body:
        parts.append(f"body={_safe_dump(body)[:300]}")
    cause = exc.__cause__ or exc.__context__
    if cause is not None and cause is not exc and _depth < 4:
        parts.append(f"cause={format_error(cause, _depth + 1)}")
    return " | ".join(parts)
