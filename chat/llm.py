# chat/llm.py

import os
import time
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence
from random import random
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FUTimeout

# Quiet down gRPC noise from the SDK
os.environ.setdefault("GRPC_VERBOSITY", "ERROR")
os.environ.setdefault("GRPC_TRACE", "")

from django.conf import settings
import google.generativeai as genai

logger = logging.getLogger(__name__)

# ===== Exceptions =====
class GeminiError(RuntimeError):
    ...


class GeminiBlocked(RuntimeError):
    ...


class GeminiUnavailable(RuntimeError):
    ...


class GeminiConfigError(RuntimeError):
    ...


# ===== Base config =====

DEFAULT_MODEL = "gemini-2.0-flash"

GENCFG = {
    "temperature": 0.4,
    "top_p": 0.8,
    "top_k": 40,
    "max_output_tokens": 1000,
}

MAX_DOCUMENT_CHARS = 15000
SHORT_WEB_CONTENT = 300

DEFAULT_DEADLINE_S = 30   # per-request timeout (LLM SDK)
APP_TIMEOUT_S = 40        # app-level guard

RETRY_MAX = 2
RETRY_BASE_SLEEP = 0.6

# ===== Lazy Gemini client =====

_model = None


def _get_model():
    """Create and cache the Gemini model client."""
    global _model
    if _model is not None:
        return _model

    api_key = getattr(settings, "GEMINI_API_KEY", None)
    if not api_key:
        raise GeminiConfigError("GEMINI_API_KEY missing")

    try:
        genai.configure(api_key=api_key)
        _m = genai.GenerativeModel(getattr(settings, "GEMINI_MODEL", None) or DEFAULT_MODEL)
    except Exception as e:
        raise GeminiConfigError(f"gemini_config_error: {e}")
    _model = _m
    return _model


# ===== Response helpers =====

def _extract_text(resp) -> str:
    """
    Safely extract text from Gemini SDK / mock responses.

    Supports resp.candidates[..].content.parts[..].text, resp.text and
    plain strings. Always returns a str.
    """
    if isinstance(resp, str):
        return resp.strip()

    try:
        candidates = getattr(resp, "candidates", None) or []
        for c in candidates:
            content = getattr(c, "content", None)
            parts = getattr(content, "parts", None) or []
            for p in parts:
                txt = getattr(p, "text", "") or ""
                if isinstance(txt, str) and txt.strip():
                    return txt.strip()
    except Exception:
        # Any structural weirdness falls through to text fallback.
        pass

    try:
        t = getattr(resp, "text", "") or ""
    except Exception:
        # resp.text raises when the candidate was blocked
        return ""
    return t.strip() if isinstance(t, str) else ""


def _is_retryable_error(exc: Exception) -> bool:
    s = str(exc).lower()
    return any(
        k in s
        for k in [
            "deadline",
            "timeout",
            "unavailable",
            "temporar",
            "try again",
            "rate",
            "429",
            "connection reset",
            "transport error",
            "internal",
        ]
    )


def _with_retries(call_fn):
    """Run call_fn with simple exponential-backoff retries on transient errors."""
    last_exc = None
    for i in range(RETRY_MAX + 1):
        try:
            return call_fn()
        except Exception as e:
            last_exc = e
            if not _is_retryable_error(e) or i == RETRY_MAX:
                raise
            sleep_s = RETRY_BASE_SLEEP * (2 ** i) * (1 + 0.25 * random())
            time.sleep(sleep_s)
    raise last_exc  # pragma: no cover


def _check_block(resp) -> None:
    fb = getattr(resp, "prompt_feedback", None)
    if fb:
        br = getattr(fb, "block_reason", None)
        if isinstance(br, str) and br:
            raise GeminiBlocked(f"blocked: {br}")

    cand0 = (getattr(resp, "candidates", None) or [None])[0]
    finish = getattr(cand0, "finish_reason", None)
    if isinstance(finish, str) and finish.lower() in {"safety", "blocked"}:
        raise GeminiBlocked(f"finish_reason={finish}")


# ===== Components =====

class LLMClient(Protocol):
    def generate(
        self, parts: Sequence[str], *, generation_config: dict, timeout_s: int
    ) -> object:
        ...


@dataclass
class ResilientCaller:
    """Owns timeout + retry mechanics."""

    app_timeout_s: int = APP_TIMEOUT_S

    def run(self, fn: Callable[[], object]) -> object:
        with ThreadPoolExecutor(max_workers=1) as ex:
            fut = ex.submit(lambda: _with_retries(fn))
            try:
                return fut.result(timeout=self.app_timeout_s)
            except FUTimeout:
                logger.warning("gemini_app_timeout after %ss", self.app_timeout_s)
                raise GeminiUnavailable("app_timeout")


class GeminiLLMClient:
    """Adapter over google.generativeai GenerativeModel."""

    def __init__(self, model=None):
        self._model = model or _get_model()

    def generate(
        self, parts: Sequence[str], *, generation_config: dict, timeout_s: int
    ) -> object:
        return self._model.generate_content(
            list(parts),
            generation_config=generation_config,
            request_options={"timeout": timeout_s},
        )


def build_prompt(document, question: str) -> str:
    doc_type = getattr(document, "type", "") or "unknown"
    filename = getattr(document, "filename", "") or "Untitled Document"
    content = getattr(document, "content", "") or "No content available"
    url = getattr(document, "url", "") or ""

    lines = [
        "You are an AI assistant that helps users understand and analyze documents.",
        f'The current document is a {doc_type} file named "{filename}".',
        "",
        "Instructions:",
        "1. Focus on providing accurate information from the document",
        "2. Format responses in a clear, point-wise manner",
        "3. Avoid markdown formatting",
        "4. If the answer is not in the document, politely say so",
        "5. Keep responses concise",
        "",
    ]
    if doc_type == "web" and url:
        lines.append(f"Source website: {url}")
    if doc_type == "web" and len(getattr(document, "content", "") or "") < SHORT_WEB_CONTENT:
        lines.append("Note: This is likely a text-only version due to website restrictions.")
    lines += [
        "",
        "Document content:",
        content[:MAX_DOCUMENT_CHARS],
        "",
        f"User question: {question}",
    ]
    return "\n".join(lines)


def demo_answer(document, question: str) -> str:
    """Deterministic answer used when no Gemini key is configured."""
    doc_type = getattr(document, "type", "") or "unknown"
    filename = getattr(document, "filename", "") or "Untitled Document"
    kind = "web article" if doc_type == "web" else doc_type
    return (
        f"I'm analyzing the {doc_type} document: {filename}\n\n"
        f"1. This appears to be a {kind} document.\n"
        f'2. The document is titled "{filename}".\n'
        f'3. You asked: "{question}"\n'
        "4. Since this is a demo without a configured API key, I'm providing this mock response.\n"
        "5. To get actual AI responses, please configure a valid Gemini API key."
    )


class DocumentAnswerer:
    """Answers a question about one document's extracted text."""

    def __init__(self, llm: Optional[LLMClient] = None, caller: Optional[ResilientCaller] = None):
        self._llm = llm
        self.caller = caller or ResilientCaller()

    @property
    def configured(self) -> bool:
        return self._llm is not None or bool(getattr(settings, "GEMINI_API_KEY", None))

    def answer(self, document, question: str) -> str:
        if not self.configured:
            logger.info("GEMINI_API_KEY not set; returning demo answer")
            return demo_answer(document, question)

        llm = self._llm or GeminiLLMClient()
        prompt = build_prompt(document, question)

        def _call():
            return llm.generate([prompt], generation_config=GENCFG, timeout_s=DEFAULT_DEADLINE_S)

        try:
            resp = self.caller.run(_call)
        except GeminiUnavailable:
            raise
        except Exception as e:
            raise GeminiError(str(e)) from e

        _check_block(resp)
        text = _extract_text(resp)
        if not text:
            raise GeminiError("empty_response")
        return text
