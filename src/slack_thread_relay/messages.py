from __future__ import annotations

from typing import Any, Iterable, Optional

DEFAULT_TITLE = "Untitled task"
DEFAULT_WAITING_REASON = "Waiting for permission or user input"
STALLED_TEXT = (
    "Processing appears stalled (possibly waiting for a permission prompt or user input)"
)

LEVEL_ICONS = {
    "info": "⏳",
    "warn": "⚠️",
    "debug": "🔍",
}
LEVELS = tuple(LEVEL_ICONS)


def normalize_level(level: Optional[str]) -> str:
    if not isinstance(level, str):
        return "info"
    key = level.strip().lower()
    return key if key in LEVEL_ICONS else "info"


def title_from_cwd(cwd_hint: Optional[str]) -> Optional[str]:
    if not cwd_hint:
        return None
    parts = [part for part in cwd_hint.replace("\\", "/").split("/") if part]
    return parts[-1] if parts else None


def resolve_title(
    explicit: Optional[str],
    stored: Optional[str] = None,
    cwd_hint: Optional[str] = None,
) -> str:
    return explicit or stored or title_from_cwd(cwd_hint) or DEFAULT_TITLE


def _with_mention(text: str, mention_text: str) -> str:
    return f"{text}\n\n{mention_text}" if mention_text else text


class MessageFormatter:
    """Renders the text of every message posted into a job thread."""

    def __init__(self, prefix: Optional[str] = None) -> None:
        self.prefix = prefix

    def _prefixed(self, text: str) -> str:
        return f"{self.prefix} {text}" if self.prefix else text

    def parent(
        self,
        title: str,
        metadata: Optional[dict[str, Any]] = None,
        mention_text: str = "",
    ) -> str:
        meta_lines = [f"• {key}: {value}" for key, value in (metadata or {}).items()]
        body = f"🚀 *Started:* {title}"
        if meta_lines:
            body += "\n" + "\n".join(meta_lines)
        return self._prefixed(_with_mention(body, mention_text))

    def progress(self, message: str, level: str = "info") -> str:
        return f"{LEVEL_ICONS[normalize_level(level)]} {message}"

    def waiting(self, title: str, reason: Optional[str] = None) -> str:
        return self._prefixed(
            f"⏸️ *Waiting:* {title}\n{reason or DEFAULT_WAITING_REASON}"
        )

    def complete(
        self,
        title: str,
        summary: Optional[str] = None,
        suggestions: Optional[Iterable[str]] = None,
    ) -> str:
        text = f"✅ *Done:* {title}"
        if summary:
            text += f"\n{summary}"
        items = [item for item in (suggestions or []) if item]
        if items:
            text += "\n\n*Next suggestions:*\n" + "\n".join(f"• {item}" for item in items)
        return self._prefixed(text)

    def fail(self, title: str, error_summary: str, logs_hint: Optional[str] = None) -> str:
        text = f"❌ *Failed:* {title}\n{error_summary}"
        if logs_hint:
            text += f"\n\n*Logs:* {logs_hint}"
        return self._prefixed(text)

    def stalled(self) -> str:
        return f"⏸️ {STALLED_TEXT}"
