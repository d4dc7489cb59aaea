"""Word-level substitutions applied to text sent to and received from the language model.

This is a best-effort heuristic that lowers the rate of safety-filter
rejections and keeps spoken replies business-appropriate. It is NOT a
security or policy boundary: it is trivially bypassed, and it mangles
legitimate words ("password" in a support call becomes "credential").
"""
import re
from typing import List, Optional, Tuple


SUBSTITUTIONS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(hack|exploit|bypass|crack|break)\b", re.IGNORECASE), "modify"),
    (re.compile(r"\b(kill|destroy|attack)\b", re.IGNORECASE), "stop"),
    (re.compile(r"\b(virus|malware|trojan)\b", re.IGNORECASE), "software"),
    (re.compile(r"\b(password|secret|token)\b", re.IGNORECASE), "credential"),
]

_MARKDOWN = re.compile(r"[*_#`>]+")
_WHITESPACE = re.compile(r"\s+")


def apply_substitutions(text: Optional[str]) -> str:
    if not text:
        return ""
    for pattern, replacement in SUBSTITUTIONS:
        text = pattern.sub(replacement, text)
    return text.strip()


def sanitize_inbound(text: Optional[str]) -> str:
    """Pre-filter for caller speech or SMS bodies before they reach the model."""
    return _WHITESPACE.sub(" ", apply_substitutions(text)).strip()


def sanitize_outbound(text: Optional[str], max_length: Optional[int] = None) -> str:
    """Tone pass for a model reply before it is spoken or texted.

    Strips markdown the text-to-speech engine would read aloud, collapses
    whitespace, and optionally trims to `max_length` on a word boundary.
    """
    cleaned = _MARKDOWN.sub("", apply_substitutions(text))
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    if max_length and len(cleaned) > max_length:
        cut = cleaned[:max_length].rsplit(" ", 1)[0]
        cleaned = cut.rstrip(",;:") or cleaned[:max_length]
    return cleaned
