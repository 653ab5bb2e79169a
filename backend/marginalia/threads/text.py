"""Default text accessor and preview helpers.

Stored content is either a plain string or a list of multimodal parts
({"type": "text", "text": ...} / {"type": "image_url", ...}). Only text parts
take part in anchoring and highlighting.
"""

import re
from html import unescape
from typing import Any

from marginalia.models import MessageNode

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def content_text(content: str | list[dict[str, Any]] | None) -> str:
    """Concatenated text of a content payload; image parts are skipped."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = [
        part.get("text", "")
        for part in content
        if isinstance(part, dict) and part.get("type") == "text"
    ]
    return "\n".join(p for p in parts if isinstance(p, str) and p)


def plain_text(node: MessageNode) -> str:
    """Searchable text of a node. Used for anchoring and highlight ranges."""
    return content_text(node.content)


def strip_html(text: str) -> str:
    if not text:
        return ""
    return unescape(_TAG_RE.sub("", text)).strip()


def summarize_preview_text(text: str, max_length: int = 80) -> str:
    """Collapse whitespace and cut to max_length characters with an ellipsis."""
    safe = _WS_RE.sub(" ", text or "").strip()
    if len(safe) <= max_length:
        return safe
    return f"{safe[:max_length]}…"
