from __future__ import annotations

import dataclasses
import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .logging_utils import log_event
from .utils import atomic_write, now_iso, read_json


class JobStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED}


def _optional_str(payload: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


@dataclass
class JobState:
    job_id: str
    channel: str
    thread_handle: str
    title: str
    status: JobStatus = JobStatus.STARTED
    created_at: str = ""
    updated_at: str = ""
    permalink: Optional[str] = None
    progress_message_handle: Optional[str] = None

    @property
    def has_thread(self) -> bool:
        return bool(self.thread_handle)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Optional["JobState"]:
        job_id = _optional_str(payload, "jobId", "job_id")
        channel = _optional_str(payload, "channel")
        if not job_id or channel is None:
            return None
        status_raw = payload.get("status")
        try:
            status = JobStatus(status_raw)
        except ValueError:
            return None
        return cls(
            job_id=job_id,
            channel=channel,
            thread_handle=_optional_str(
                payload, "threadHandle", "thread_handle", "threadTs"
            )
            or "",
            title=_optional_str(payload, "title") or job_id,
            status=status,
            created_at=_optional_str(payload, "createdAt", "created_at") or "",
            updated_at=_optional_str(payload, "updatedAt", "updated_at") or "",
            permalink=_optional_str(payload, "permalink"),
            progress_message_handle=_optional_str(
                payload,
                "progressMessageHandle",
                "progress_message_handle",
                "progressMessageTs",
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "channel": self.channel,
            "threadHandle": self.thread_handle,
            "title": self.title,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "permalink": self.permalink,
            "progressMessageHandle": self.progress_message_handle,
        }


class JobLedger:
    """
    Maps job ids to their thread state.

    The ledger is loaded once from `path` (when given) and rewritten in full
    after every mutation. Persistence is best effort: a corrupt or unreadable
    file loads as an empty ledger and failed writes are logged and dropped,
    counted in `persist_failures`. States handed out are copies.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._path = path
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._jobs: dict[str, JobState] = {}
        self.persist_failures = 0
        if path is not None:
            self._load(path)

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def get(self, job_id: str) -> Optional[JobState]:
        with self._lock:
            state = self._jobs.get(job_id)
            return dataclasses.replace(state) if state is not None else None

    def has(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    def create(
        self,
        job_id: str,
        channel: str,
        thread_handle: str,
        title: str,
        permalink: Optional[str] = None,
    ) -> JobState:
        now = now_iso()
        state = JobState(
            job_id=job_id,
            channel=channel,
            thread_handle=thread_handle,
            title=title,
            status=JobStatus.STARTED,
            created_at=now,
            updated_at=now,
            permalink=permalink,
        )
        with self._lock:
            self._jobs[job_id] = state
            self._save()
            return dataclasses.replace(state)

    def update_status(self, job_id: str, status: JobStatus) -> bool:
        def apply(state: JobState) -> None:
            state.status = JobStatus(status)

        return self._mutate(job_id, apply)

    def update_thread_handle(
        self, job_id: str, handle: str, permalink: Optional[str] = None
    ) -> bool:
        def apply(state: JobState) -> None:
            state.thread_handle = handle
            if permalink is not None:
                state.permalink = permalink

        return self._mutate(job_id, apply)

    def update_progress_message_handle(self, job_id: str, handle: str) -> bool:
        def apply(state: JobState) -> None:
            state.progress_message_handle = handle

        return self._mutate(job_id, apply)

    def clear_progress_message_handle(self, job_id: str) -> bool:
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None or state.progress_message_handle is None:
                return False

            def apply(state: JobState) -> None:
                state.progress_message_handle = None

            return self._mutate(job_id, apply)

    def get_progress_message_handle(self, job_id: str) -> Optional[str]:
        with self._lock:
            state = self._jobs.get(job_id)
            return state.progress_message_handle if state is not None else None

    def is_terminal(self, job_id: str) -> bool:
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None:
                return False
            return state.status.is_terminal()

    def delete(self, job_id: str) -> bool:
        with self._lock:
            existed = self._jobs.pop(job_id, None) is not None
            if existed:
                self._save()
            return existed

    def list(self) -> list[JobState]:
        with self._lock:
            return [dataclasses.replace(state) for state in self._jobs.values()]

    def _mutate(self, job_id: str, apply: Callable[[JobState], None]) -> bool:
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None:
                return False
            apply(state)
            state.updated_at = now_iso()
            self._save()
            return True

    def _load(self, path: Path) -> None:
        try:
            data = read_json(path)
        except (OSError, ValueError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "ledger.load.failed",
                path=str(path),
                exc=exc,
            )
            return
        if data is None:
            return
        if not isinstance(data, list):
            log_event(
                self._logger,
                logging.WARNING,
                "ledger.load.invalid",
                path=str(path),
                kind=type(data).__name__,
            )
            return
        skipped = 0
        for record in data:
            state = JobState.from_dict(record) if isinstance(record, dict) else None
            if state is None:
                skipped += 1
                continue
            self._jobs[state.job_id] = state
        log_event(
            self._logger,
            logging.DEBUG,
            "ledger.loaded",
            path=str(path),
            jobs=len(self._jobs),
            skipped=skipped,
        )

    def _save(self) -> None:
        path = self._path
        if path is None:
            return
        payload = [state.to_dict() for state in self._jobs.values()]
        try:
            atomic_write(path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            self.persist_failures += 1
            log_event(
                self._logger,
                logging.WARNING,
                "ledger.save.failed",
                path=str(path),
                failures=self.persist_failures,
                exc=exc,
            )
