"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `slack_thread_relay` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@dataclass
class RecordedCall:
    method: str
    channel: str
    thread_handle: Optional[str] = None
    text: Optional[str] = None
    title: Optional[str] = None
    mention: bool = False
    existing_reply_handle: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass
class FakeChannel:
    """In-memory conversation channel that records every call it receives."""

    calls: list[RecordedCall] = field(default_factory=list)
    top_ok: bool = True
    reply_ok: bool = True
    permalink_base: str = "https://slack.example/archives"
    _counter: int = 0

    def _next_handle(self) -> str:
        self._counter += 1
        return f"1700000000.{self._counter:06d}"

    def calls_of(self, method: str) -> list[RecordedCall]:
        return [call for call in self.calls if call.method == method]

    async def post_top(self, channel, title, metadata=None, mention=True):
        from slack_thread_relay.channel import PostResult

        self.calls.append(
            RecordedCall(
                method="post_top",
                channel=channel,
                title=title,
                mention=mention,
                metadata=metadata,
            )
        )
        if not self.top_ok:
            return PostResult(ok=False, channel=channel, error="channel_not_found")
        handle = self._next_handle()
        return PostResult(
            ok=True,
            channel=channel,
            handle=handle,
            permalink=f"{self.permalink_base}/{channel}/p{handle.replace('.', '')}",
        )

    async def post_reply(self, channel, thread_handle, text, mention=False):
        from slack_thread_relay.channel import ReplyResult

        self.calls.append(
            RecordedCall(
                method="post_reply",
                channel=channel,
                thread_handle=thread_handle,
                text=text,
                mention=mention,
            )
        )
        if not self.reply_ok:
            return ReplyResult(ok=False, error="ratelimited")
        return ReplyResult(ok=True, handle=self._next_handle())

    async def upsert_reply(
        self, channel, thread_handle, text, mention=False, existing_reply_handle=None
    ):
        from slack_thread_relay.channel import ReplyResult

        method = "edit_reply" if existing_reply_handle else "post_reply"
        self.calls.append(
            RecordedCall(
                method=method,
                channel=channel,
                thread_handle=thread_handle,
                text=text,
                mention=mention,
                existing_reply_handle=existing_reply_handle,
            )
        )
        if not self.reply_ok:
            return ReplyResult(ok=False, error="ratelimited")
        return ReplyResult(ok=True, handle=existing_reply_handle or self._next_handle())


@pytest.fixture()
def fake_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture()
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "threads.json"


@pytest.fixture()
def relay_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, state_path: Path) -> Path:
    """
    Point configuration at a throwaway home: no global config file, logs under
    tmp_path, and the minimal Slack settings set through the environment.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    monkeypatch.setenv("SLACK_DEFAULT_CHANNEL", "C0DEFAULT")
    monkeypatch.setenv("THREAD_STATE_PATH", str(state_path))
    for name in (
        "SLACK_MENTION_USER_IDS",
        "SLACK_MENTION_GROUP_ID",
        "SLACK_POST_PREFIX",
        "SLACK_THREAD_DEBUG",
        "DEBUG",
        "SLACK_THREAD_JOB_ID",
        "CLAUDE_ENV_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return home
