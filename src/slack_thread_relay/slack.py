"""Slack Web API implementation of the conversation channel."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from .channel import PostResult, ReplyResult
from .logging_utils import log_event
from .messages import MessageFormatter

DEFAULT_TIMEOUT_SECONDS = 10.0


class SlackChannel:
    """
    Posts job threads through `chat.postMessage`, `chat.update` and
    `chat.getPermalink`.

    Every failure (HTTP status, transport error, or a `{"ok": false}` reply
    from Slack) is logged and reported as a failed result; nothing raises.
    """

    API_BASE = "https://slack.com/api"

    def __init__(
        self,
        bot_token: str,
        *,
        mention_user_ids: Optional[Sequence[str]] = None,
        mention_group_id: Optional[str] = None,
        use_channel_mention: bool = True,
        formatter: Optional[MessageFormatter] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not bot_token:
            raise ValueError("Slack bot token required")
        self.mention_user_ids = [uid for uid in (mention_user_ids or []) if uid]
        self.mention_group_id = mention_group_id
        self.use_channel_mention = use_channel_mention
        self.formatter = formatter or MessageFormatter()
        self._logger = logger or logging.getLogger(__name__)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.API_BASE, timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }

    async def __aenter__(self) -> "SlackChannel":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def render_mention(self) -> str:
        mentions = [f"<@{uid}>" for uid in self.mention_user_ids]
        if self.mention_group_id:
            mentions.append(f"<!subteam^{self.mention_group_id}>")
        if not mentions and self.use_channel_mention:
            return "<!channel>"
        return " ".join(mentions)

    async def post_top(
        self,
        channel: str,
        title: str,
        metadata: Optional[dict[str, Any]] = None,
        mention: bool = True,
    ) -> PostResult:
        text = self.formatter.parent(
            title, metadata, self.render_mention() if mention else ""
        )
        data = await self._call(
            "chat.postMessage", {"channel": channel, "text": text, "mrkdwn": True}
        )
        if not data.get("ok") or not data.get("ts"):
            return PostResult(ok=False, channel=channel, error=_error_of(data))
        posted_channel = data.get("channel") or channel
        permalink = await self.get_permalink(posted_channel, data["ts"])
        return PostResult(
            ok=True,
            channel=posted_channel,
            handle=str(data["ts"]),
            permalink=permalink,
        )

    async def post_reply(
        self, channel: str, thread_handle: str, text: str, mention: bool = False
    ) -> ReplyResult:
        data = await self._call(
            "chat.postMessage",
            {
                "channel": channel,
                "thread_ts": thread_handle,
                "text": self._with_mention(text, mention),
                "mrkdwn": True,
            },
        )
        return _reply_result(data)

    async def upsert_reply(
        self,
        channel: str,
        thread_handle: str,
        text: str,
        mention: bool = False,
        existing_reply_handle: Optional[str] = None,
    ) -> ReplyResult:
        if not existing_reply_handle:
            return await self.post_reply(channel, thread_handle, text, mention)
        data = await self._call(
            "chat.update",
            {
                "channel": channel,
                "ts": existing_reply_handle,
                "text": self._with_mention(text, mention),
            },
        )
        result = _reply_result(data)
        if result.ok and not result.handle:
            return ReplyResult(ok=True, handle=existing_reply_handle)
        return result

    async def get_permalink(self, channel: str, message_handle: str) -> Optional[str]:
        data = await self._call(
            "chat.getPermalink",
            {"channel": channel, "message_ts": message_handle},
            method="GET",
        )
        permalink = data.get("permalink")
        return permalink if data.get("ok") and isinstance(permalink, str) else None

    def _with_mention(self, text: str, mention: bool) -> str:
        mention_text = self.render_mention() if mention else ""
        return f"{text}\n\n{mention_text}" if mention_text else text

    async def _call(
        self, api_method: str, payload: dict[str, Any], *, method: str = "POST"
    ) -> dict[str, Any]:
        try:
            if method == "GET":
                response = await self._client.get(
                    f"/{api_method}", params=payload, headers=self._headers
                )
            else:
                response = await self._client.post(
                    f"/{api_method}", json=payload, headers=self._headers
                )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "slack.api.failed",
                method=api_method,
                channel=payload.get("channel"),
                exc=exc,
            )
            return {"ok": False, "error": str(exc) or type(exc).__name__}
        if not isinstance(data, dict):
            return {"ok": False, "error": "invalid_response"}
        if not data.get("ok"):
            log_event(
                self._logger,
                logging.WARNING,
                "slack.api.error",
                method=api_method,
                channel=payload.get("channel"),
                error=data.get("error"),
            )
        return data


def _error_of(data: dict[str, Any]) -> str:
    error = data.get("error")
    return str(error) if error else "unknown_error"


def _reply_result(data: dict[str, Any]) -> ReplyResult:
    if not data.get("ok"):
        return ReplyResult(ok=False, error=_error_of(data))
    ts = data.get("ts")
    return ReplyResult(ok=True, handle=str(ts) if ts else None)
