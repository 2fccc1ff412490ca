"""
Pydantic request/response schemas for the tool-call HTTP transport.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .engine import ReplyKind


class Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ResponseModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ThreadAddressing(Payload):
    thread_handle: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("thread_handle", "thread_ts", "threadHandle"),
    )
    channel: Optional[str] = None
    title: Optional[str] = None
    cwd: Optional[str] = None


class StartRequest(Payload):
    title: Optional[str] = None
    channel: Optional[str] = None
    meta: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("meta", "metadata")
    )
    mention: bool = True
    silent: bool = False


class UpdateRequest(ThreadAddressing):
    message: str
    level: Literal["info", "warn", "debug"] = "info"
    mention: bool = False
    upsert: bool = False
    kind: ReplyKind = ReplyKind.PROGRESS
    enable_waiting_monitor: bool = Field(
        default=True,
        validation_alias=AliasChoices("enable_waiting_monitor", "watchdog"),
    )
    waiting_timeout_ms: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("waiting_timeout_ms", "watchdog_delay_ms"),
    )


class WaitingRequest(ThreadAddressing):
    reason: Optional[str] = None
    mention: bool = True


class CompleteRequest(ThreadAddressing):
    summary: Optional[str] = None
    next_suggestions: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("next_suggestions", "suggestions"),
    )
    mention: bool = True


class FailRequest(ThreadAddressing):
    error_summary: str = Field(validation_alias=AliasChoices("error_summary", "error"))
    logs_hint: Optional[str] = None
    mention: bool = True


class JobStateResponse(ResponseModel):
    job_id: str
    channel: str
    thread_handle: str
    title: str
    status: str
    created_at: str
    updated_at: str
    permalink: Optional[str] = None
    progress_message_handle: Optional[str] = None


class JobListResponse(ResponseModel):
    jobs: List[JobStateResponse]
    persist_failures: int = 0
