"""Outbound text formatting for agent output."""

from __future__ import annotations

import re

_INTERNAL_RE = re.compile(r"<internal>.*?</internal>", re.DOTALL)


def strip_internal(text: str) -> str:
    """Remove <internal>...</internal> reasoning blocks and trim."""
    return _INTERNAL_RE.sub("", text).strip()


def format_outbound(text: str) -> str:
    """Text as it should reach the user. Empty means do not send."""
    return strip_internal(text)


def excerpt(text: str, limit: int = 100) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[:limit] + "..."
