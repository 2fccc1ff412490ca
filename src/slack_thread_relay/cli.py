import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn, Optional

import typer
import uvicorn

from .config import ConfigError, RelayConfig, load_config
from .engine import LifecycleEngine, OperationResult, RelayError
from .hooks import (
    ENV_FILE_VAR,
    JOB_ID_ENV_VAR,
    HookPayload,
    parse_hook_payload,
    plan_update,
    save_env_file,
    waiting_reason,
)
from .messages import LEVELS, title_from_cwd
from .runtime import RelayRuntime, build_ledger, build_runtime
from .server import create_app

app = typer.Typer(add_completion=False, help="Relay job lifecycles into Slack threads.")

Operation = Callable[[LifecycleEngine], Awaitable[OperationResult]]


def _fail(message: str) -> NoReturn:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


def _read_stdin_payload(enabled: bool) -> Optional[HookPayload]:
    if not enabled:
        return None
    return parse_hook_payload(sys.stdin.read())


def _resolve_job_id(job_id: Optional[str], payload: Optional[HookPayload]) -> str:
    resolved = job_id or (payload.session_id if payload else None) or os.environ.get(
        JOB_ID_ENV_VAR
    )
    if not resolved:
        _fail(f"job id required (--job-id, stdin session_id, or {JOB_ID_ENV_VAR})")
    return resolved


def _cwd_hint(cwd: Optional[str], payload: Optional[HookPayload]) -> Optional[str]:
    return cwd or (payload.cwd if payload else None)


def _load_config(cwd_hint: Optional[str]) -> RelayConfig:
    try:
        return load_config(Path(cwd_hint) if cwd_hint else None)
    except ConfigError as exc:
        _fail(str(exc))


def _build_runtime(config: RelayConfig) -> RelayRuntime:
    return build_runtime(config)


def _parse_meta(meta: Optional[str]) -> Optional[dict[str, Any]]:
    if not meta:
        return None
    try:
        parsed = json.loads(meta)
    except ValueError as exc:
        _fail(f"--meta must be a JSON object: {exc}")
    if not isinstance(parsed, dict):
        _fail("--meta must be a JSON object")
    return parsed


def _parse_suggestions(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    text = raw.strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            _fail(f"--next-suggestions must be a JSON list or comma-separated: {exc}")
        if not isinstance(parsed, list):
            _fail("--next-suggestions must be a JSON list or comma-separated")
        return [str(item) for item in parsed if str(item).strip()]
    return [item.strip() for item in text.split(",") if item.strip()]


def _save_env(job_id: str) -> None:
    env_file = os.environ.get(ENV_FILE_VAR)
    if not env_file:
        return
    try:
        save_env_file(Path(env_file), job_id, os.environ)
    except OSError as exc:
        typer.echo(f"Failed to write {ENV_FILE_VAR} ({env_file}): {exc}", err=True)


def _execute(config: RelayConfig, operation: Operation) -> None:
    async def _main() -> OperationResult:
        runtime = _build_runtime(config)
        try:
            return await operation(runtime.engine)
        finally:
            await runtime.aclose()

    try:
        result = asyncio.run(_main())
    except (ConfigError, RelayError) as exc:
        _fail(str(exc))
    typer.echo(json.dumps(result.to_dict(), ensure_ascii=False))


@app.command()
def start(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier"),
    title: Optional[str] = typer.Option(None, "--title", help="Thread title"),
    channel: Optional[str] = typer.Option(None, "--channel", help="Slack channel id"),
    meta: Optional[str] = typer.Option(None, "--meta", help="JSON object of metadata"),
    mention: bool = typer.Option(True, "--mention/--no-mention"),
    silent: bool = typer.Option(
        False, "--silent", help="Record the job; create the thread on the first update"
    ),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
    stdin: bool = typer.Option(False, "--stdin", help="Read hook JSON from stdin"),
    save_env: bool = typer.Option(
        False, "--save-env", help=f"Append job id and Slack settings to ${ENV_FILE_VAR}"
    ),
):
    """Open the thread for a job (reuses an existing one)."""
    payload = _read_stdin_payload(stdin)
    resolved_id = _resolve_job_id(job_id, payload)
    cwd_hint = _cwd_hint(cwd, payload)
    metadata = _parse_meta(meta)
    config = _load_config(cwd_hint)
    if save_env:
        _save_env(resolved_id)
    resolved_title = title or title_from_cwd(cwd_hint)
    _execute(
        config,
        lambda engine: engine.start(
            resolved_id, resolved_title, channel, metadata, mention, silent=silent
        ),
    )


@app.command()
def update(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier"),
    message: Optional[str] = typer.Option(None, "--message", help="Progress text"),
    level: str = typer.Option("info", "--level", help="info, warn, or debug"),
    mention: bool = typer.Option(False, "--mention/--no-mention"),
    upsert: bool = typer.Option(
        False, "--upsert", help="Edit the running progress reply instead of adding one"
    ),
    thread_handle: Optional[str] = typer.Option(None, "--thread-handle"),
    channel: Optional[str] = typer.Option(None, "--channel"),
    title: Optional[str] = typer.Option(None, "--title"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
    stdin: bool = typer.Option(False, "--stdin", help="Read hook JSON from stdin"),
):
    """Post a progress reply into the job's thread."""
    if level not in LEVELS:
        _fail(f"--level must be one of: {', '.join(LEVELS)}")
    payload = _read_stdin_payload(stdin)
    resolved_id = _resolve_job_id(job_id, payload)
    cwd_hint = _cwd_hint(cwd, payload)
    plan = plan_update(payload, message, upsert=upsert)
    if not plan.message:
        _fail("--message required (or a hook payload that describes the update)")
    config = _load_config(cwd_hint)
    _execute(
        config,
        lambda engine: engine.update(
            resolved_id,
            plan.message,
            level,
            mention,
            thread_handle=thread_handle,
            channel=channel,
            title=title,
            cwd_hint=cwd_hint,
            upsert=plan.upsert,
            kind=plan.kind,
            watchdog=False,
        ),
    )


@app.command()
def waiting(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Why the job is blocked"),
    mention: bool = typer.Option(True, "--mention/--no-mention"),
    thread_handle: Optional[str] = typer.Option(None, "--thread-handle"),
    channel: Optional[str] = typer.Option(None, "--channel"),
    title: Optional[str] = typer.Option(None, "--title"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
    stdin: bool = typer.Option(False, "--stdin", help="Read hook JSON from stdin"),
):
    """Mark the job as waiting for a human."""
    payload = _read_stdin_payload(stdin)
    resolved_id = _resolve_job_id(job_id, payload)
    cwd_hint = _cwd_hint(cwd, payload)
    resolved_reason = waiting_reason(payload, reason)
    config = _load_config(cwd_hint)
    _execute(
        config,
        lambda engine: engine.wait(
            resolved_id,
            resolved_reason,
            mention,
            thread_handle=thread_handle,
            channel=channel,
            title=title,
            cwd_hint=cwd_hint,
        ),
    )


@app.command()
def complete(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier"),
    summary: Optional[str] = typer.Option(None, "--summary"),
    next_suggestions: Optional[str] = typer.Option(
        None, "--next-suggestions", help="JSON list or comma-separated"
    ),
    mention: bool = typer.Option(True, "--mention/--no-mention"),
    thread_handle: Optional[str] = typer.Option(None, "--thread-handle"),
    channel: Optional[str] = typer.Option(None, "--channel"),
    title: Optional[str] = typer.Option(None, "--title"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
    stdin: bool = typer.Option(False, "--stdin", help="Read hook JSON from stdin"),
):
    """Post the completion reply and close the job."""
    payload = _read_stdin_payload(stdin)
    resolved_id = _resolve_job_id(job_id, payload)
    cwd_hint = _cwd_hint(cwd, payload)
    suggestions = _parse_suggestions(next_suggestions)
    config = _load_config(cwd_hint)
    _execute(
        config,
        lambda engine: engine.complete(
            resolved_id,
            summary,
            suggestions,
            mention,
            thread_handle=thread_handle,
            channel=channel,
            title=title,
            cwd_hint=cwd_hint,
        ),
    )


@app.command()
def fail(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier"),
    error: Optional[str] = typer.Option(None, "--error", help="Error summary"),
    logs_hint: Optional[str] = typer.Option(None, "--logs-hint"),
    mention: bool = typer.Option(True, "--mention/--no-mention"),
    thread_handle: Optional[str] = typer.Option(None, "--thread-handle"),
    channel: Optional[str] = typer.Option(None, "--channel"),
    title: Optional[str] = typer.Option(None, "--title"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
    stdin: bool = typer.Option(False, "--stdin", help="Read hook JSON from stdin"),
):
    """Post the failure reply and close the job."""
    if not error:
        _fail("--error required")
    payload = _read_stdin_payload(stdin)
    resolved_id = _resolve_job_id(job_id, payload)
    cwd_hint = _cwd_hint(cwd, payload)
    config = _load_config(cwd_hint)
    _execute(
        config,
        lambda engine: engine.fail(
            resolved_id,
            error,
            logs_hint,
            mention,
            thread_handle=thread_handle,
            channel=channel,
            title=title,
            cwd_hint=cwd_hint,
        ),
    )


@app.command("list")
def list_jobs(
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
):
    """Print every tracked job as JSON."""
    ledger = build_ledger(_load_config(cwd))
    typer.echo(
        json.dumps([state.to_dict() for state in ledger.list()], indent=2, ensure_ascii=False)
    )


@app.command()
def delete(
    job_id: Optional[str] = typer.Option(None, "--job-id", help="Job identifier"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory hint"),
):
    """Forget a job; its Slack thread is left untouched."""
    resolved_id = _resolve_job_id(job_id, None)
    ledger = build_ledger(_load_config(cwd))
    existed = ledger.delete(resolved_id)
    output: dict[str, Any] = {"ok": existed, "job_id": resolved_id}
    if not existed:
        output["reason"] = "unknown job"
    typer.echo(json.dumps(output))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", help="Port to bind"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Directory holding .env"),
):
    """Run the tool-call HTTP server."""
    config = _load_config(cwd)
    try:
        app_instance = create_app(config)
    except ConfigError as exc:
        _fail(str(exc))
    bind_host = host or config.server_host
    bind_port = port or config.server_port
    typer.echo(f"Serving slack-thread-relay on http://{bind_host}:{bind_port}")
    uvicorn.run(app_instance, host=bind_host, port=bind_port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
