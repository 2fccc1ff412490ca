from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .config import DEFAULT_WATCHDOG_DELAY_MS
from .logging_utils import log_event

WatchdogCallback = Callable[[str, dict[str, Any]], Awaitable[None]]


@dataclass
class WatchdogEntry:
    job_id: str
    delay_ms: int
    context: dict[str, Any] = field(default_factory=dict)
    task: Optional[asyncio.Task[None]] = None
    notified: bool = False


class InactivityWatchdog:
    """
    Single-shot inactivity timers keyed by job id.

    At most one timer is pending per job: arming replaces (and cancels) the
    previous one. Entries live here, never in the persisted job state.
    """

    def __init__(
        self,
        on_fire: WatchdogCallback,
        *,
        default_delay_ms: int = DEFAULT_WATCHDOG_DELAY_MS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._on_fire = on_fire
        self._default_delay_ms = default_delay_ms
        self._logger = logger or logging.getLogger(__name__)
        self._entries: dict[str, WatchdogEntry] = {}
        self._notified: set[str] = set()

    @property
    def default_delay_ms(self) -> int:
        return self._default_delay_ms

    def arm(
        self,
        job_id: str,
        delay_ms: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> WatchdogEntry:
        self.cancel(job_id)
        delay = delay_ms if delay_ms and delay_ms > 0 else self._default_delay_ms
        entry = WatchdogEntry(job_id=job_id, delay_ms=delay, context=dict(context or {}))
        entry.task = asyncio.get_running_loop().create_task(self._run(entry))
        self._entries[job_id] = entry
        log_event(
            self._logger, logging.DEBUG, "watchdog.armed", job_id=job_id, delay_ms=delay
        )
        return entry

    def cancel(self, job_id: str) -> bool:
        self._notified.discard(job_id)
        entry = self._entries.pop(job_id, None)
        if entry is None:
            return False
        task = entry.task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        log_event(self._logger, logging.DEBUG, "watchdog.cancelled", job_id=job_id)
        return True

    def cancel_all(self) -> None:
        for job_id in list(self._entries):
            self.cancel(job_id)

    def pending(self, job_id: str) -> bool:
        entry = self._entries.get(job_id)
        return bool(
            entry is not None
            and entry.task is not None
            and not entry.task.done()
            and not entry.notified
        )

    def was_notified(self, job_id: str) -> bool:
        return job_id in self._notified

    @property
    def armed(self) -> int:
        return len(self._entries)

    async def _run(self, entry: WatchdogEntry) -> None:
        await asyncio.sleep(entry.delay_ms / 1000)
        if self._entries.get(entry.job_id) is not entry or entry.notified:
            return
        entry.notified = True
        self._notified.add(entry.job_id)
        log_event(
            self._logger,
            logging.INFO,
            "watchdog.fired",
            job_id=entry.job_id,
            delay_ms=entry.delay_ms,
        )
        try:
            await self._on_fire(entry.job_id, entry.context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "watchdog.callback.failed",
                job_id=entry.job_id,
                exc=exc,
            )
        finally:
            # Fired timers are done; only the notified flag outlives them.
            if self._entries.get(entry.job_id) is entry:
                del self._entries[entry.job_id]


def _current_task() -> Optional[asyncio.Task[Any]]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
