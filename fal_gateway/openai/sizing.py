"""Size handling for the image endpoints.

Two independent pieces live here:

* ``normalize_aspect_ratio`` maps whatever a client sends as ``size`` (``1024x1792``,
  ``16:9``, ``16/9``...) onto the aspect ratios the queue models accept.
* ``extract_size_directive`` pulls an inline ratio instruction out of free chat text,
  e.g. ``"a cat size:16:9"`` -> ``("a cat", "16:9")``.
"""

from __future__ import annotations

import re
from typing import Any, NamedTuple, Optional

from loguru import logger

DEFAULT_ASPECT_RATIO = "1:1"

ASPECT_RATIOS = ("1:1", "16:9", "9:16", "21:9", "9:21", "4:3", "3:4", "3:2", "2:3")

KNOWN_SIZES = {
    "256x256": "1:1",
    "512x512": "1:1",
    "1024x1024": "1:1",
    "1792x1024": "16:9",
    "1024x1792": "9:16",
    **{ratio: ratio for ratio in ASPECT_RATIOS},
}

# (ratio, numeric value, absolute tolerance); first hit wins.
RATIO_PRIORITY = (
    ("1:1", 1.0, 0.05),
    ("16:9", 16 / 9, 0.1),
    ("9:16", 9 / 16, 0.1),
    ("4:3", 4 / 3, 0.1),
    ("3:4", 3 / 4, 0.1),
    ("21:9", 21 / 9, 0.1),
    ("9:21", 9 / 21, 0.1),
    ("3:2", 3 / 2, 0.1),
    ("2:3", 2 / 3, 0.1),
)

_DIMENSIONS_RE = re.compile(r"(\d+)[:x](\d+)")

# Boundaries are spelled out instead of using \b so that CJK text around a
# directive (e.g. "比例:16:9的猫") still matches.
_KEYWORD_DIRECTIVE_RE = re.compile(
    r"(?<![A-Za-z0-9_])(?:size|aspect_ratio|比例)\s*[:=：]?\s*(\d+[:/xX]\d+)(?![A-Za-z0-9_])",
    re.IGNORECASE,
)
_BARE_DIRECTIVE_RE = re.compile(r"(?<![A-Za-z0-9_])(\d+)[:/xX](\d+)(?![A-Za-z0-9_])")
_WHITESPACE_RUN_RE = re.compile(r"\s{2,}")

MAX_BARE_DIMENSION = 5000


class PromptExtraction(NamedTuple):
    prompt: str
    size: Optional[str]


def _match_ratio(width: int, height: int) -> Optional[str]:
    value = width / height
    for ratio, target, tolerance in RATIO_PRIORITY:
        if abs(value - target) < tolerance:
            return ratio
    return None


def normalize_aspect_ratio(size: Any) -> str:
    """Return one of ``ASPECT_RATIOS`` for an arbitrary size token. Never raises."""
    if size is None or size == "":
        return DEFAULT_ASPECT_RATIO

    token = str(size).strip().lower().replace("/", ":")
    if token in KNOWN_SIZES:
        return KNOWN_SIZES[token]

    match = _DIMENSIONS_RE.fullmatch(token)
    if match:
        width, height = int(match.group(1)), int(match.group(2))
        if width and height:
            ratio = _match_ratio(width, height)
            if ratio:
                return ratio

    logger.warning(
        "Unmapped or invalid size '{}', defaulting to {}. Check model aspect_ratio support.",
        size,
        DEFAULT_ASPECT_RATIO,
    )
    return DEFAULT_ASPECT_RATIO


def find_keyword_directive(text: str) -> Optional[re.Match]:
    """Last ``size|aspect_ratio|比例`` labelled directive in ``text``."""
    last = None
    for last in _KEYWORD_DIRECTIVE_RE.finditer(text):
        pass
    return last


def find_bare_directive(text: str) -> Optional[re.Match]:
    """Last unlabelled ``W:H`` / ``W/H`` / ``WxH`` token with both sides in (0, 5000)."""
    chosen = None
    for match in _BARE_DIRECTIVE_RE.finditer(text):
        width, height = int(match.group(1)), int(match.group(2))
        if 0 < width < MAX_BARE_DIMENSION and 0 < height < MAX_BARE_DIMENSION:
            chosen = match
    return chosen


def _cut(text: str, match: re.Match) -> str:
    remaining = text[: match.start()] + text[match.end() :]
    return _WHITESPACE_RUN_RE.sub(" ", remaining).strip()


def extract_size_directive(text: str) -> PromptExtraction:
    """Split chat text into the visible prompt and an optional size directive.

    A labelled directive always beats a bare one; within a pass the last
    occurrence wins. Text without any directive is returned untouched.
    """
    keyword = find_keyword_directive(text)
    if keyword:
        return PromptExtraction(_cut(text, keyword), keyword.group(1))

    bare = find_bare_directive(text)
    if bare:
        return PromptExtraction(_cut(text, bare), bare.group(0))

    return PromptExtraction(text, None)


def message_text(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
        ]
        if parts:
            return "\n".join(parts)
    return None


def last_user_prompt(messages: list[Any]) -> Optional[str]:
    """Text of the last ``user`` message, or ``None`` when there is none usable."""
    for message in reversed(messages):
        if isinstance(message, dict) and message.get("role") == "user":
            return message_text(message.get("content"))
    return None
