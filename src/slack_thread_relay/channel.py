from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class PostResult:
    ok: bool
    channel: str
    handle: str = ""
    permalink: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ReplyResult:
    ok: bool
    handle: Optional[str] = None
    error: Optional[str] = None


class ConversationChannel(Protocol):
    """Where job threads live. Failures are reported in results, never raised."""

    async def post_top(
        self,
        channel: str,
        title: str,
        metadata: Optional[dict[str, Any]] = None,
        mention: bool = True,
    ) -> PostResult: ...

    async def post_reply(
        self, channel: str, thread_handle: str, text: str, mention: bool = False
    ) -> ReplyResult: ...

    async def upsert_reply(
        self,
        channel: str,
        thread_handle: str,
        text: str,
        mention: bool = False,
        existing_reply_handle: Optional[str] = None,
    ) -> ReplyResult: ...
