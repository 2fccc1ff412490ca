from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Iterable, Optional

from .channel import ConversationChannel
from .config import DEFAULT_WATCHDOG_DELAY_MS
from .ledger import JobLedger, JobState, JobStatus
from .logging_utils import log_event
from .messages import DEFAULT_TITLE, MessageFormatter, resolve_title
from .watchdog import InactivityWatchdog

# Semantic boundaries (new turn, final response, waiting, terminal) drop the
# coalescable reply only once their own post went through.
CLEAR_HANDLE_AFTER_BOUNDARY_SUCCESS_ONLY = True

TERMINAL_REASON = "job already terminal"
TERMINAL_NOTE = "already terminal"
POST_FAILED_REASON = "post failed"


class RelayError(Exception):
    """Base error for hard failures surfaced to the transport."""


class ThreadNotFoundError(RelayError):
    """No thread handle could be resolved and none could be created."""


class ThreadCreateError(RelayError):
    """Posting the top-level message that anchors a thread failed."""


class ReplyKind(str, Enum):
    PROGRESS = "progress"
    TURN_START = "turn_start"
    FINAL = "final"


@dataclass
class OperationResult:
    ok: bool
    job_id: str
    channel: Optional[str] = None
    thread_handle: Optional[str] = None
    permalink: Optional[str] = None
    handle: Optional[str] = None
    reason: Optional[str] = None
    note: Optional[str] = None
    created: bool = False
    reused: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok, "job_id": self.job_id}
        for key in ("channel", "thread_handle", "permalink", "handle", "reason", "note"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.created:
            payload["created"] = True
        if self.reused:
            payload["reused"] = True
        return payload


@dataclass
class _JobLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class ResolvedThread:
    channel: str
    thread_handle: str
    title: str
    tracked: bool
    created: bool = False
    permalink: Optional[str] = None


class LifecycleEngine:
    """
    Drives job threads through started -> in_progress -> completed/failed.

    Operations for one job run one at a time (per-job asyncio lock, shared
    with watchdog firings). The ledger is only written after the channel
    confirms a post.
    """

    def __init__(
        self,
        ledger: JobLedger,
        channel: ConversationChannel,
        *,
        default_channel: Optional[str] = None,
        formatter: Optional[MessageFormatter] = None,
        lazy_create: bool = True,
        watchdog_delay_ms: int = DEFAULT_WATCHDOG_DELAY_MS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._ledger = ledger
        self._channel = channel
        self._default_channel = default_channel
        self._formatter = formatter or MessageFormatter()
        self._lazy_create = lazy_create
        self._logger = logger or logging.getLogger(__name__)
        self._watchdog = InactivityWatchdog(
            self._on_watchdog_fire,
            default_delay_ms=watchdog_delay_ms,
            logger=self._logger,
        )
        self._job_locks: dict[str, _JobLock] = {}

    @property
    def ledger(self) -> JobLedger:
        return self._ledger

    @property
    def active_jobs(self) -> int:
        """Jobs with an operation running or queued right now."""
        return len(self._job_locks)

    @property
    def watchdog(self) -> InactivityWatchdog:
        return self._watchdog

    async def start(
        self,
        job_id: str,
        title: Optional[str] = None,
        channel: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        mention: bool = True,
        *,
        silent: bool = False,
    ) -> OperationResult:
        async with self._job_lock(job_id):
            existing = self._ledger.get(job_id)
            if existing is not None:
                log_event(self._logger, logging.INFO, "engine.start.reused", job_id=job_id)
                return self._result(existing, ok=True, note="reused existing thread", reused=True)
            target_channel = channel or self._default_channel
            if not target_channel:
                raise ThreadCreateError(f"No channel available for job {job_id}")
            resolved_title = title or DEFAULT_TITLE
            if silent:
                state = self._ledger.create(job_id, target_channel, "", resolved_title)
                log_event(self._logger, logging.INFO, "engine.start.silent", job_id=job_id)
                return self._result(
                    state, ok=True, note="silent start; thread will be created lazily"
                )
            posted = await self._channel.post_top(
                target_channel, resolved_title, metadata, mention
            )
            if not posted.ok or not posted.handle:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "engine.start.post_failed",
                    job_id=job_id,
                    channel=target_channel,
                    error=posted.error,
                )
                raise ThreadCreateError(f"Failed to post the top-level message for job {job_id}")
            state = self._ledger.create(
                job_id,
                posted.channel or target_channel,
                posted.handle,
                resolved_title,
                posted.permalink,
            )
            log_event(
                self._logger,
                logging.INFO,
                "engine.thread.created",
                job_id=job_id,
                channel=state.channel,
                thread_handle=state.thread_handle,
            )
            return self._result(state, ok=True, created=True)

    async def update(
        self,
        job_id: str,
        message: str,
        level: str = "info",
        mention: bool = False,
        *,
        thread_handle: Optional[str] = None,
        channel: Optional[str] = None,
        title: Optional[str] = None,
        cwd_hint: Optional[str] = None,
        upsert: bool = False,
        kind: ReplyKind = ReplyKind.PROGRESS,
        watchdog: bool = True,
        watchdog_delay_ms: Optional[int] = None,
    ) -> OperationResult:
        kind = ReplyKind(kind)
        self._watchdog.cancel(job_id)
        async with self._job_lock(job_id):
            self._watchdog.cancel(job_id)
            state = self._ledger.get(job_id)
            if state is not None and state.status.is_terminal():
                return self._terminal_noop(job_id, "update")
            thread = await self._resolve_thread(
                job_id,
                state,
                thread_handle=thread_handle,
                channel=channel,
                title=title,
                cwd_hint=cwd_hint,
                mention=mention,
            )
            target: Optional[str] = None
            if thread.tracked and (
                kind is ReplyKind.FINAL or (kind is ReplyKind.PROGRESS and upsert)
            ):
                target = self._ledger.get_progress_message_handle(job_id)
            result = await self._channel.upsert_reply(
                thread.channel,
                thread.thread_handle,
                self._formatter.progress(message, level),
                mention,
                target,
            )
            if thread.tracked:
                if kind is ReplyKind.PROGRESS:
                    if result.ok and result.handle:
                        self._ledger.update_progress_message_handle(job_id, result.handle)
                else:
                    self._end_coalescing(job_id, result.ok)
            if not result.ok:
                return self._reply_failed(job_id, thread, "update", result.error)
            if thread.tracked:
                self._ledger.update_status(job_id, JobStatus.IN_PROGRESS)
            if watchdog and kind is not ReplyKind.FINAL:
                self._watchdog.arm(
                    job_id,
                    watchdog_delay_ms,
                    {"channel": thread.channel, "thread_handle": thread.thread_handle},
                )
            return self._thread_result(job_id, thread, handle=result.handle)

    async def wait(
        self,
        job_id: str,
        reason: Optional[str] = None,
        mention: bool = True,
        *,
        thread_handle: Optional[str] = None,
        channel: Optional[str] = None,
        title: Optional[str] = None,
        cwd_hint: Optional[str] = None,
    ) -> OperationResult:
        self._watchdog.cancel(job_id)
        async with self._job_lock(job_id):
            self._watchdog.cancel(job_id)
            state = self._ledger.get(job_id)
            if state is not None and state.status.is_terminal():
                return self._terminal_noop(job_id, "wait")
            thread = await self._resolve_thread(
                job_id,
                state,
                thread_handle=thread_handle,
                channel=channel,
                title=title,
                cwd_hint=cwd_hint,
                mention=mention,
            )
            existing = (
                self._ledger.get_progress_message_handle(job_id) if thread.tracked else None
            )
            result = await self._channel.upsert_reply(
                thread.channel,
                thread.thread_handle,
                self._formatter.waiting(thread.title, reason),
                mention,
                existing,
            )
            if thread.tracked:
                self._end_coalescing(job_id, result.ok)
            if not result.ok:
                return self._reply_failed(job_id, thread, "wait", result.error)
            return self._thread_result(job_id, thread, handle=result.handle)

    async def complete(
        self,
        job_id: str,
        summary: Optional[str] = None,
        suggestions: Optional[Iterable[str]] = None,
        mention: bool = True,
        *,
        thread_handle: Optional[str] = None,
        channel: Optional[str] = None,
        title: Optional[str] = None,
        cwd_hint: Optional[str] = None,
    ) -> OperationResult:
        items = list(suggestions or [])
        return await self._finish(
            job_id,
            JobStatus.COMPLETED,
            lambda job_title: self._formatter.complete(job_title, summary, items),
            mention=mention,
            thread_handle=thread_handle,
            channel=channel,
            title=title,
            cwd_hint=cwd_hint,
        )

    async def fail(
        self,
        job_id: str,
        error_summary: str,
        logs_hint: Optional[str] = None,
        mention: bool = True,
        *,
        thread_handle: Optional[str] = None,
        channel: Optional[str] = None,
        title: Optional[str] = None,
        cwd_hint: Optional[str] = None,
    ) -> OperationResult:
        return await self._finish(
            job_id,
            JobStatus.FAILED,
            lambda job_title: self._formatter.fail(job_title, error_summary, logs_hint),
            mention=mention,
            thread_handle=thread_handle,
            channel=channel,
            title=title,
            cwd_hint=cwd_hint,
        )

    def delete(self, job_id: str) -> bool:
        self._watchdog.cancel(job_id)
        return self._ledger.delete(job_id)

    async def aclose(self) -> None:
        self._watchdog.cancel_all()

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        render: Callable[[str], str],
        *,
        mention: bool,
        thread_handle: Optional[str],
        channel: Optional[str],
        title: Optional[str],
        cwd_hint: Optional[str],
    ) -> OperationResult:
        operation = status.value
        self._watchdog.cancel(job_id)
        async with self._job_lock(job_id):
            self._watchdog.cancel(job_id)
            state = self._ledger.get(job_id)
            if state is not None and state.status.is_terminal():
                log_event(
                    self._logger,
                    logging.INFO,
                    "engine.terminal.noop",
                    job_id=job_id,
                    operation=operation,
                    status=state.status.value,
                )
                return self._result(state, ok=True, note=TERMINAL_NOTE)
            thread = await self._resolve_thread(
                job_id,
                state,
                thread_handle=thread_handle,
                channel=channel,
                title=title,
                cwd_hint=cwd_hint,
                mention=mention,
            )
            result = await self._channel.post_reply(
                thread.channel, thread.thread_handle, render(thread.title), mention
            )
            if thread.tracked:
                if result.ok:
                    self._ledger.update_status(job_id, status)
                self._end_coalescing(job_id, result.ok)
            if not result.ok:
                return self._reply_failed(job_id, thread, operation, result.error)
            log_event(
                self._logger,
                logging.INFO,
                "engine.job.finished",
                job_id=job_id,
                status=status.value,
            )
            return self._thread_result(job_id, thread, handle=result.handle)

    async def _resolve_thread(
        self,
        job_id: str,
        state: Optional[JobState],
        *,
        thread_handle: Optional[str],
        channel: Optional[str],
        title: Optional[str],
        cwd_hint: Optional[str],
        mention: bool,
    ) -> ResolvedThread:
        target_channel = (state.channel if state else None) or channel or self._default_channel
        if thread_handle:
            if not target_channel:
                raise ThreadNotFoundError(f"No channel known for job {job_id}")
            if state is not None and not state.has_thread:
                # Placeholder from a silent start adopts the caller's thread.
                self._ledger.update_thread_handle(job_id, thread_handle)
            return ResolvedThread(
                channel=target_channel,
                thread_handle=thread_handle,
                title=title or (state.title if state else None) or job_id,
                tracked=state is not None,
                permalink=state.permalink if state else None,
            )
        if state is not None and state.has_thread:
            return ResolvedThread(
                channel=state.channel,
                thread_handle=state.thread_handle,
                title=state.title,
                tracked=True,
                permalink=state.permalink,
            )
        if not self._lazy_create or not target_channel:
            raise ThreadNotFoundError(
                f"Thread not found: job_id={job_id}, thread_handle={thread_handle}"
            )
        return await self._create_thread_lazily(
            job_id,
            state,
            channel=target_channel,
            title=resolve_title(title, state.title if state else None, cwd_hint),
            mention=mention,
        )

    async def _create_thread_lazily(
        self,
        job_id: str,
        state: Optional[JobState],
        *,
        channel: str,
        title: str,
        mention: bool,
    ) -> ResolvedThread:
        log_event(
            self._logger,
            logging.INFO,
            "engine.thread.lazy_create",
            job_id=job_id,
            channel=channel,
            title=title,
        )
        posted = await self._channel.post_top(channel, title, None, mention)
        if not posted.ok or not posted.handle:
            raise ThreadCreateError(f"Failed to create a thread for job {job_id}")
        if state is not None:
            self._ledger.update_thread_handle(job_id, posted.handle, posted.permalink)
            resolved_channel = state.channel
        else:
            resolved_channel = posted.channel or channel
            self._ledger.create(job_id, resolved_channel, posted.handle, title, posted.permalink)
        log_event(
            self._logger,
            logging.INFO,
            "engine.thread.created",
            job_id=job_id,
            channel=resolved_channel,
            thread_handle=posted.handle,
            lazy=True,
        )
        return ResolvedThread(
            channel=resolved_channel,
            thread_handle=posted.handle,
            title=title,
            tracked=True,
            created=True,
            permalink=posted.permalink,
        )

    async def _on_watchdog_fire(self, job_id: str, context: dict[str, Any]) -> None:
        async with self._job_lock(job_id):
            if self._ledger.is_terminal(job_id):
                return
            result = await self._channel.post_reply(
                context["channel"],
                context["thread_handle"],
                self._formatter.stalled(),
                False,
            )
            log_event(
                self._logger,
                logging.INFO if result.ok else logging.WARNING,
                "engine.stalled.notice",
                job_id=job_id,
                ok=result.ok,
                error=result.error,
            )

    def _end_coalescing(self, job_id: str, succeeded: bool) -> None:
        if CLEAR_HANDLE_AFTER_BOUNDARY_SUCCESS_ONLY and not succeeded:
            return
        self._ledger.clear_progress_message_handle(job_id)

    @contextlib.asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        # Entries only exist while someone holds or waits on them.
        entry = self._job_locks.get(job_id)
        if entry is None:
            entry = _JobLock()
            self._job_locks[job_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._job_locks.get(job_id) is entry:
                del self._job_locks[job_id]

    def _terminal_noop(self, job_id: str, operation: str) -> OperationResult:
        log_event(
            self._logger,
            logging.INFO,
            "engine.terminal.noop",
            job_id=job_id,
            operation=operation,
        )
        return OperationResult(ok=False, job_id=job_id, reason=TERMINAL_REASON)

    def _reply_failed(
        self,
        job_id: str,
        thread: ResolvedThread,
        operation: str,
        error: Optional[str],
    ) -> OperationResult:
        log_event(
            self._logger,
            logging.WARNING,
            "engine.reply.failed",
            job_id=job_id,
            operation=operation,
            error=error,
        )
        result = self._thread_result(job_id, thread)
        result.ok = False
        result.reason = POST_FAILED_REASON
        return result

    def _thread_result(
        self, job_id: str, thread: ResolvedThread, *, handle: Optional[str] = None
    ) -> OperationResult:
        return OperationResult(
            ok=True,
            job_id=job_id,
            channel=thread.channel,
            thread_handle=thread.thread_handle,
            permalink=thread.permalink,
            handle=handle,
            created=thread.created,
        )

    def _result(
        self,
        state: JobState,
        *,
        ok: bool,
        note: Optional[str] = None,
        created: bool = False,
        reused: bool = False,
    ) -> OperationResult:
        return OperationResult(
            ok=ok,
            job_id=state.job_id,
            channel=state.channel,
            thread_handle=state.thread_handle,
            permalink=state.permalink,
            note=note,
            created=created,
            reused=reused,
        )
