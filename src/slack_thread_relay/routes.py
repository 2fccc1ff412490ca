"""
Job lifecycle endpoints for tool-call clients.

Structured outcomes (already terminal, upstream post failed) are returned as
200 responses with `ok: false`; only missing threads and failed anchor posts
become HTTP errors.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from .engine import LifecycleEngine, ThreadCreateError, ThreadNotFoundError
from .ledger import JobState
from .logging_utils import log_event
from .schemas import (
    CompleteRequest,
    FailRequest,
    JobListResponse,
    JobStateResponse,
    StartRequest,
    UpdateRequest,
    WaitingRequest,
)


def _engine(request: Request) -> LifecycleEngine:
    return request.app.state.engine


def _state_response(state: JobState) -> JobStateResponse:
    payload = dataclasses.asdict(state)
    payload["status"] = state.status.value
    return JobStateResponse(**payload)


async def _run(request: Request, job_id: str, operation: str, call: Any) -> dict[str, Any]:
    try:
        result = await call
    except ThreadNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ThreadCreateError as exc:
        log_event(
            request.app.state.logger,
            logging.ERROR,
            "server.operation.failed",
            job_id=job_id,
            operation=operation,
            exc=exc,
        )
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return result.to_dict()


def build_job_routes() -> APIRouter:
    router = APIRouter()

    @router.post("/api/jobs/{job_id}/start")
    async def start_job(job_id: str, payload: StartRequest, request: Request):
        engine = _engine(request)
        return await _run(
            request,
            job_id,
            "start",
            engine.start(
                job_id,
                payload.title,
                payload.channel,
                payload.meta,
                payload.mention,
                silent=payload.silent,
            ),
        )

    @router.post("/api/jobs/{job_id}/update")
    async def update_job(job_id: str, payload: UpdateRequest, request: Request):
        engine = _engine(request)
        watchdog = payload.enable_waiting_monitor and request.app.state.watchdog_enabled
        return await _run(
            request,
            job_id,
            "update",
            engine.update(
                job_id,
                payload.message,
                payload.level,
                payload.mention,
                thread_handle=payload.thread_handle,
                channel=payload.channel,
                title=payload.title,
                cwd_hint=payload.cwd,
                upsert=payload.upsert,
                kind=payload.kind,
                watchdog=watchdog,
                watchdog_delay_ms=payload.waiting_timeout_ms,
            ),
        )

    @router.post("/api/jobs/{job_id}/waiting")
    async def job_waiting(job_id: str, payload: WaitingRequest, request: Request):
        engine = _engine(request)
        return await _run(
            request,
            job_id,
            "wait",
            engine.wait(
                job_id,
                payload.reason,
                payload.mention,
                thread_handle=payload.thread_handle,
                channel=payload.channel,
                title=payload.title,
                cwd_hint=payload.cwd,
            ),
        )

    @router.post("/api/jobs/{job_id}/complete")
    async def complete_job(job_id: str, payload: CompleteRequest, request: Request):
        engine = _engine(request)
        return await _run(
            request,
            job_id,
            "complete",
            engine.complete(
                job_id,
                payload.summary,
                payload.next_suggestions,
                payload.mention,
                thread_handle=payload.thread_handle,
                channel=payload.channel,
                title=payload.title,
                cwd_hint=payload.cwd,
            ),
        )

    @router.post("/api/jobs/{job_id}/fail")
    async def fail_job(job_id: str, payload: FailRequest, request: Request):
        engine = _engine(request)
        return await _run(
            request,
            job_id,
            "fail",
            engine.fail(
                job_id,
                payload.error_summary,
                payload.logs_hint,
                payload.mention,
                thread_handle=payload.thread_handle,
                channel=payload.channel,
                title=payload.title,
                cwd_hint=payload.cwd,
            ),
        )

    @router.get("/api/jobs", response_model=JobListResponse)
    async def list_jobs(request: Request):
        ledger = _engine(request).ledger
        return JobListResponse(
            jobs=[_state_response(state) for state in ledger.list()],
            persist_failures=ledger.persist_failures,
        )

    @router.get("/api/jobs/{job_id}", response_model=JobStateResponse)
    async def get_job(job_id: str, request: Request):
        state = _engine(request).ledger.get(job_id)
        if state is None:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        return _state_response(state)

    @router.delete("/api/jobs/{job_id}")
    async def delete_job(job_id: str, request: Request):
        if not _engine(request).delete(job_id):
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        return {"ok": True, "job_id": job_id}

    return router
