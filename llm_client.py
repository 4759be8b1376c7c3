import os
import sys
import time
import json
import zlib
import logging
import threading
import functools
from typing import Any, Dict, Optional, Tuple, Type

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from image_ops import encode_data_url
from prompts import get_system_prompt
from scan_errors import SchemaViolationError, TransientNetworkError, classify_error, format_error
from schemas import (
    CountEstimateResult,
    DescriptionResult,
    DetectionResult,
    DiscoveryResult,
    ReconciliationResult,
    VerificationResult,
    validate_response,
)

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class EventLogger:
    """Append-only JSONL log of inference requests.

    One line per event; `seq` numbers events in write order and `ts` is the
    wall-clock time of the write. A logger built with no path is a no-op.
    """
    def __init__(self, log_path: Optional[str]) -> None:
        self.log_path = log_path
        self._lock = threading.Lock()
        self._count = 0
        self._fh = None
        if log_path:
            os.makedirs(os.path.dirname(os.path.abspath(log_path)) or ".", exist_ok=True)

    @property
    def enabled(self) -> bool:
        return bool(self.log_path)

    def emit(self, event: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            with self._lock:
                if self._fh is None:
                    self._fh = open(self.log_path, "a", encoding="utf-8")
                self._count += 1
                record = {"seq": self._count, "ts": time.time(), **event}
                self._fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
                self._fh.flush()
        except (OSError, TypeError, ValueError) as e:
            logger.debug("event log write failed: %s", e)

    def close(self) -> None:
        with self._lock:
            fh, self._fh = self._fh, None
        if fh is not None:
            try:
                fh.close()
            except OSError as e:
                logger.debug("event log close failed: %s", e)


def silence_external_loggers():
    """Quiet the HTTP and LangChain loggers.

    Set SCANNER_SILENCE_HTTP=0 to keep their INFO output."""
    if os.getenv("SCANNER_SILENCE_HTTP", "1") != "1":
        return
    for name in ("httpx", "httpcore", "openai", "langchain", "langchain_core", "langchain_openai", "urllib3"):
        ext = logging.getLogger(name)
        ext.setLevel(logging.WARNING)
        ext.propagate = False


def _invoke_with_timeout(fn, timeout_sec: float):
    """Call `fn` on a daemon thread and wait at most `timeout_sec` for it.

    Returns (True, value) on success, or (False, exception). A call that
    outlives the deadline yields a TimeoutError; the thread is abandoned.
    """
    finished = threading.Event()
    outcome: Dict[str, Any] = {}

    def target():
        try:
            outcome["value"] = fn()
        except Exception as e:
            outcome["error"] = e
        finally:
            finished.set()

    threading.Thread(target=target, name="llm-invoke", daemon=True).start()
    if not finished.wait(timeout_sec):
        return False, TimeoutError(f"model call exceeded {timeout_sec}s")
    if "error" in outcome:
        return False, outcome["error"]
    return True, outcome["value"]


def build_langchain_llm(model: str, api_key: str, timeout: float = 120.0) -> ChatOpenAI:
    return ChatOpenAI(
        model=model,
        api_key=api_key,
        base_url=OPENROUTER_BASE_URL,
        temperature=0.2,
        timeout=timeout,
        # Retries belong to the pool, which also owns the rate-limit window.
        max_retries=0,
        model_kwargs={"response_format": {"type": "json_object"}},
        default_headers={
            "HTTP-Referer": "https://github.com/artwork-scan",
            "X-Title": "Artwork object detection",
        },
    )


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Parse a model reply as JSON, falling back to its outermost {...} span."""
    body = text.strip()
    candidates = [body]
    first, last = body.find("{"), body.rfind("}")
    if 0 <= first < last:
        candidates.append(body[first:last + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


def _content_text(ai_msg: Any) -> str:
    content = getattr(ai_msg, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = []
        for part in content:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
        return "\n".join(chunks)
    return ""


class InferenceClient:
    """Callable inference collaborator backed by a LangChain chat model.

    `client(prompt_text, image_bytes, response_schema, temperature)` returns
    `(validated_model, usage)` or raises a classified scan_errors exception.
    """

    def __init__(
        self,
        llm: ChatOpenAI,
        model: str,
        events: Optional[EventLogger] = None,
        timeout: float = 120.0,
    ) -> None:
        self.llm = llm
        self.model = model
        self.events = events
        self.timeout = timeout

    def _emit(self, ev: Dict[str, Any]) -> None:
        if self.events is not None:
            self.events.emit({"model": self.model, **ev})

    def __call__(
        self,
        prompt_text: str,
        image_bytes: bytes,
        response_schema: Type[BaseModel],
        temperature: float = 0.2,
    ) -> Tuple[BaseModel, Optional[Dict[str, Any]]]:
        messages = [
            SystemMessage(content=get_system_prompt()),
            HumanMessage(
                content=[
                    {"type": "text", "text": prompt_text},
                    {"type": "image_url", "image_url": {"url": encode_data_url(image_bytes)}},
                ]
            ),
        ]
        schema_name = response_schema.__name__
        self._emit({"type": "sent", "schema": schema_name, "prompt": prompt_text})
        if os.getenv("SCANNER_DEBUG") == "1":
            print(f"LLM call: schema={schema_name} prompt={prompt_text[:200]!r}...", file=sys.stderr)

        call = functools.partial(self.llm.invoke, messages, temperature=temperature)
        ok, val = _invoke_with_timeout(call, self.timeout)
        if not ok:
            if isinstance(val, TimeoutError):
                err = TransientNetworkError(str(val))
            else:
                err = classify_error(val)
            self._emit({"type": "error", "schema": schema_name, "error": format_error(err)})
            raise err

        content_text = _content_text(val)
        usage = getattr(val, "usage_metadata", None)
        parsed = extract_json(content_text)
        self._emit({
            "type": "done",
            "schema": schema_name,
            "response_text": content_text,
            "usage": dict(usage) if usage else None,
        })
        if parsed is None:
            raise SchemaViolationError(f"{schema_name}: response is not JSON: {content_text[:200]!r}")
        return validate_response(response_schema, parsed), (dict(usage) if usage else None)


class MockInference:
    """Deterministic offline responses for --mock runs and tests.

    Boxes are derived from a checksum of the prompt, so the same call always
    gets the same answer.
    """

    KINDS = [
        {"kind": "hound", "type": "animal", "estimated_count": "few", "estimated_size": "medium",
         "segmentation": "exhaustive", "importance": "primary"},
        {"kind": "stag", "type": "animal", "estimated_count": "few", "estimated_size": "large",
         "segmentation": "exhaustive", "importance": "primary"},
        {"kind": "hunter", "type": "person", "estimated_count": "few", "estimated_size": "medium",
         "segmentation": "exhaustive", "importance": "primary"},
        {"kind": "forest", "type": "landscape", "estimated_count": "few", "estimated_size": "large",
         "segmentation": "area_mass", "importance": "background"},
    ]

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls = 0

    def _boxes(self, prompt_text: str, n: int):
        seed = zlib.crc32(prompt_text.encode("utf-8"))
        out = []
        for i in range(n):
            v = (seed >> (i * 3)) & 0xFFFF
            x = 60 + (v % 700)
            y = 60 + ((v // 7) % 700)
            size = 80 + (v % 120)
            out.append([x, y, min(1000, x + size), min(1000, y + size)])
        return out

    def __call__(self, prompt_text, image_bytes, response_schema, temperature=0.2):
        with self._lock:
            self.calls += 1
        if response_schema is DiscoveryResult:
            data: Dict[str, Any] = {"kinds": self.KINDS}
        elif response_schema is ReconciliationResult:
            data = {"kinds": [
                {**k, "is_real": True, "quadrants": [], "detection_scale": "full"} for k in self.KINDS
            ]}
        elif response_schema is CountEstimateResult:
            data = {"estimated_count": "few"}
        elif response_schema is DetectionResult:
            n = 1 if "REGIONS/AREAS" in prompt_text else 3
            data = {"objects": [{"label": "", "type": "", "box_2d": b} for b in self._boxes(prompt_text, n)]}
        elif response_schema is VerificationResult:
            data = {"wrong_indices": [], "corrections": [], "missing": [], "complete": True}
        elif response_schema is DescriptionResult:
            data = {
                "alt_text": "Hunting scene with hounds and a stag at the forest edge",
                "long_description": "A mock description generated offline.",
            }
        else:
            raise SchemaViolationError(f"mock has no response for {response_schema.__name__}")
        return validate_response(response_schema, data), {"input_tokens": 0, "output_tokens": 0}
