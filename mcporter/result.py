"""Tool call result with lazily decoded views."""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

MARKDOWN_MIME_TYPES = {"text/markdown", "text/x-markdown"}
MARKDOWN_SUFFIXES = (".md", ".markdown")
JSON_MIME_TYPES = {"application/json"}

_MISSING = object()


class Result:
    """
    Wraps one tool response.

    The raw payload is kept untouched. ``text()``, ``json()`` and ``markdown()``
    are derived on first access, cached, and never raise: a view that cannot be
    produced is ``None``.

    Example:
        >>> result = Result({"content": [{"type": "text", "text": '{"ok": true}'}]})
        >>> result.text()
        '{"ok": true}'
        >>> result.json()
        {'ok': True}
    """

    __slots__ = ("_payload", "_views")

    def __init__(self, payload: Any):
        self._payload = payload
        self._views: Dict[str, Any] = {}

    def _view(self, name: str, compute: Callable[[], Any]) -> Any:
        value = self._views.get(name, _MISSING)
        if value is _MISSING:
            try:
                value = compute()
            except Exception:
                value = None
            self._views[name] = value
        return value

    # ── Views ─────────────────────────────────────────────────────────────

    def raw(self) -> Any:
        """The response exactly as the transport returned it."""
        return self._payload

    def text(self) -> Optional[str]:
        """Primary human-readable text, or ``None`` if the payload has none."""
        return self._view("text", self._extract_text)

    def json(self) -> Any:
        """Structured data, or ``None`` when the payload does not parse."""
        return self._view("json", self._extract_json)

    def markdown(self) -> Optional[str]:
        """``text()`` when the payload declares a markdown content type."""
        return self._view("markdown", self._extract_markdown)

    @property
    def content(self) -> List[Dict[str, Any]]:
        """MCP content parts (empty for non-MCP payloads)."""
        if isinstance(self._payload, dict):
            parts = self._payload.get("content")
            if isinstance(parts, list):
                return [p for p in parts if isinstance(p, dict)]
        return []

    @property
    def is_error(self) -> bool:
        """True when the server flagged the call as a tool-level error."""
        return isinstance(self._payload, dict) and bool(self._payload.get("isError"))

    # ── Extraction ────────────────────────────────────────────────────────

    def _extract_text(self) -> Optional[str]:
        payload = self._payload
        if isinstance(payload, str):
            return payload
        if isinstance(payload, bytes):
            return payload.decode("utf-8", errors="replace")
        if not isinstance(payload, dict):
            return None

        parts = []
        for part in self.content:
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif part.get("type") == "resource":
                resource = part.get("resource") or {}
                if isinstance(resource.get("text"), str):
                    parts.append(resource["text"])
        if parts:
            return "\n".join(parts)

        if isinstance(payload.get("text"), str):
            return payload["text"]
        return None

    def _extract_json(self) -> Any:
        payload = self._payload
        if isinstance(payload, dict):
            structured = payload.get("structuredContent")
            if structured is not None:
                return structured
            for part in self.content:
                resource = part.get("resource") or {}
                if resource.get("mimeType") in JSON_MIME_TYPES and isinstance(resource.get("text"), str):
                    try:
                        return json.loads(resource["text"])
                    except ValueError:
                        continue

        text = self.text()
        if text is None:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return None

    def _extract_markdown(self) -> Optional[str]:
        for part in self.content:
            mime = part.get("mimeType")
            uri = ""
            if part.get("type") == "resource":
                resource = part.get("resource") or {}
                mime = resource.get("mimeType", mime)
                uri = str(resource.get("uri", ""))
            if mime in MARKDOWN_MIME_TYPES or uri.lower().endswith(MARKDOWN_SUFFIXES):
                return self.text()
        return None

    # ── Dunder ────────────────────────────────────────────────────────────

    def __str__(self) -> str:
        text = self.text()
        if text is not None:
            return text
        try:
            return json.dumps(self._payload, indent=2, default=str)
        except (TypeError, ValueError):
            return str(self._payload)

    def __repr__(self) -> str:
        text = self.text() or ""
        preview = text[:60] + ("..." if len(text) > 60 else "")
        return f"Result(is_error={self.is_error}, text={preview!r})"
