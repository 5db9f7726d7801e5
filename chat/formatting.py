# chat/formatting.py
import re

_BOLD = re.compile(r"\*\*(.*?)\*\*")
_BULLET = re.compile(r"\n\s*[-•]\s*")
_SENTENCE_BREAK = re.compile(r"\.\s+([A-Z])")
_MARKDOWN_SYMBOLS = re.compile(r"\*\*|`|\*")


def format_point_wise(text: str) -> str:
    """
    Tidy an LLM answer for plain-text display.

    Drops **bold** markers, normalises bullets to "- ", starts a new
    paragraph after each sentence and keeps at most one blank line between
    paragraphs.
    """
    if not text:
        return ""

    text = _BOLD.sub(r"\1", text)
    text = _BULLET.sub("\n- ", text)
    text = _SENTENCE_BREAK.sub(r".\n\n\1", text)

    lines = text.split("\n")
    out = []
    for i, raw in enumerate(lines):
        line = raw.strip()
        if line:
            out.append(line)
        elif 0 < i < len(lines) - 1 and lines[i - 1].strip() and lines[i + 1].strip():
            out.append("")
    return "\n".join(out)


def format_history_text(text: str) -> str:
    """Bullet every non-empty line and strip markdown symbols."""
    if not text:
        return ""
    out = []
    for raw in text.split("\n"):
        line = raw.strip()
        if not line:
            continue
        line = _MARKDOWN_SYMBOLS.sub("", line)
        out.append(line if line.startswith(("- ", "• ")) else f"• {line}")
    return "\n".join(out)
