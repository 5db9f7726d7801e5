# chat/guardrails.py

import logging
from typing import Callable

from .llm import GeminiBlocked, GeminiError, GeminiUnavailable

EMPTY_MSG = "Please ask a question about this document."
BLOCKED_MSG = "I can't help with that request. Please ask something about the document."
FAILED_MSG = (
    "Sorry, I couldn't answer that question. "
    "Please try rephrasing it or ask something more specific about the document."
)
UNAVAILABLE_MSG = "The assistant is temporarily unavailable. Please try again in a moment."
BACKEND_MSG = "Sorry, something went wrong while processing your question. Please try again."

MAX_QUESTION_CHARS = 4000

log = logging.getLogger(__name__)


def _safe_backend_call(answer_fn: Callable[[str], str], user_message: str) -> str:
    """
    Call the answer function and turn every failure into a polite reply.

    GeminiBlocked and GeminiError are expected and logged briefly; anything
    else is logged with its traceback.
    """
    try:
        return answer_fn(user_message)

    except GeminiBlocked as e:
        log.info("Gemini blocked prompt %r: %s", user_message[:80], e)
        return BLOCKED_MSG

    except GeminiUnavailable as e:
        log.warning("Gemini unavailable for %r: %s", user_message[:80], e)
        return UNAVAILABLE_MSG

    except GeminiError as e:
        log.warning("Gemini could not answer %r: %s", user_message[:80], e)
        return FAILED_MSG

    except Exception as e:
        log.exception("Backend fatal error while answering %r: %s", user_message[:80], e)
        return BACKEND_MSG


def run_with_guardrails(user_message: str, answer_fn: Callable[[str], str]) -> str:
    """
    Entry used by the ask flow.

    1. Empty input      -> ask for a question (no backend call).
    2. Oversized input  -> truncated to MAX_QUESTION_CHARS.
    3. Else             -> backend via _safe_backend_call.
    """
    text = (user_message or "").strip()
    if not text:
        return EMPTY_MSG

    if len(text) > MAX_QUESTION_CHARS:
        log.info("Question truncated from %d to %d chars", len(text), MAX_QUESTION_CHARS)
        text = text[:MAX_QUESTION_CHARS]

    return _safe_backend_call(answer_fn, text)
