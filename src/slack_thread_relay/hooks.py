"""
Agent hook payload glue for the CLI transport.

Hooks pipe a JSON document on stdin (`session_id`, `hook_event_name`,
`tool_name`, `prompt`, `transcript_path`, ...). This module turns it into the
text to post and the coalescing kind to use; the engine only decides where and
whether to post.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .engine import ReplyKind

EVENT_POST_TOOL_USE = "PostToolUse"
EVENT_USER_PROMPT_SUBMIT = "UserPromptSubmit"
EVENT_STOP = "Stop"

PROMPT_PREVIEW_CHARS = 100
COMMAND_PREVIEW_CHARS = 50
RESPONSE_PREVIEW_CHARS = 200
DEFAULT_RESPONSE_TEXT = "Response complete"

NOTIFICATION_REASONS = {
    "permission_prompt": "Waiting for permission",
    "idle_prompt": "Idle",
    "auth_success": "Authentication succeeded",
    "elicitation_dialog": "Waiting for additional input",
}

JOB_ID_ENV_VAR = "SLACK_THREAD_JOB_ID"
ENV_FILE_VAR = "CLAUDE_ENV_FILE"
SAVED_ENV_VARS = (
    "SLACK_BOT_TOKEN",
    "SLACK_DEFAULT_CHANNEL",
    "SLACK_MENTION_USER_IDS",
    "SLACK_MENTION_GROUP_ID",
    "SLACK_POST_PREFIX",
    "THREAD_STATE_PATH",
)

_PATH_TOOLS = {"Read": "file_path", "Write": "file_path", "Edit": "file_path"}
_PATTERN_TOOLS = {"Glob": "pattern", "Grep": "pattern"}


@dataclass
class HookPayload:
    session_id: Optional[str] = None
    hook_event_name: Optional[str] = None
    cwd: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    prompt: Optional[str] = None
    message: Optional[str] = None
    notification_type: Optional[str] = None
    transcript_path: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "HookPayload":
        def text(key: str) -> Optional[str]:
            value = payload.get(key)
            return value if isinstance(value, str) and value else None

        tool_input = payload.get("tool_input")
        return cls(
            session_id=text("session_id"),
            hook_event_name=text("hook_event_name"),
            cwd=text("cwd"),
            tool_name=text("tool_name"),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            prompt=text("prompt"),
            message=text("message"),
            notification_type=text("notification_type"),
            transcript_path=text("transcript_path"),
        )

    @property
    def is_post_tool_use(self) -> bool:
        return self.hook_event_name == EVENT_POST_TOOL_USE


@dataclass(frozen=True)
class UpdatePlan:
    message: Optional[str]
    kind: ReplyKind = ReplyKind.PROGRESS
    upsert: bool = False


def parse_hook_payload(raw: str) -> Optional[HookPayload]:
    """Parse stdin content; anything that is not a JSON object yields None."""
    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return HookPayload.from_dict(data)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def describe_tool(tool_name: str, tool_input: dict[str, Any]) -> str:
    detail = ""
    if tool_name in _PATH_TOOLS and tool_input.get(_PATH_TOOLS[tool_name]):
        detail = f"`{tool_input[_PATH_TOOLS[tool_name]]}`"
    elif tool_name in _PATTERN_TOOLS and tool_input.get(_PATTERN_TOOLS[tool_name]):
        detail = f"`{tool_input[_PATTERN_TOOLS[tool_name]]}`"
    elif tool_name == "Bash" and tool_input.get("command"):
        detail = f"`{_truncate(str(tool_input['command']), COMMAND_PREVIEW_CHARS)}`"
    elif tool_name == "Task" and tool_input.get("description"):
        detail = str(tool_input["description"])
    return f"*{tool_name}*: {detail}" if detail else f"*{tool_name}*"


def last_assistant_response(
    transcript_path: str, max_length: int = RESPONSE_PREVIEW_CHARS
) -> Optional[str]:
    """Return the last assistant text block from a JSONL transcript."""
    path = Path(transcript_path)
    try:
        lines = path.read_text(encoding="utf-8").strip().splitlines()
    except (OSError, UnicodeDecodeError):
        return None
    for line in reversed(lines):
        try:
            entry = json.loads(line)
        except ValueError:
            continue
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            continue
        message = entry.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            continue
        texts = [
            block["text"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
            and block["text"]
        ]
        if texts:
            return _truncate(texts[-1], max_length)
    return None


def plan_update(
    payload: Optional[HookPayload],
    message: Optional[str] = None,
    *,
    upsert: bool = False,
) -> UpdatePlan:
    """
    Pick the progress text and coalescing kind.

    An explicit message always wins. Otherwise a new prompt opens a fresh
    turn, a tool call is folded into the running progress entry, and the final
    response of a turn overwrites that entry.
    """
    use_upsert = upsert or bool(payload and payload.is_post_tool_use)
    if message:
        return UpdatePlan(message=message, upsert=use_upsert)
    if payload is None:
        return UpdatePlan(message=None, upsert=use_upsert)
    if payload.hook_event_name == EVENT_USER_PROMPT_SUBMIT and payload.prompt:
        return UpdatePlan(
            message=f"*Prompt:* {_truncate(payload.prompt, PROMPT_PREVIEW_CHARS)}",
            kind=ReplyKind.TURN_START,
        )
    if payload.tool_name:
        return UpdatePlan(
            message=describe_tool(payload.tool_name, payload.tool_input),
            upsert=use_upsert,
        )
    if payload.hook_event_name == EVENT_STOP and payload.transcript_path:
        response = last_assistant_response(payload.transcript_path)
        text = f"*Response:* {response}" if response else DEFAULT_RESPONSE_TEXT
        return UpdatePlan(message=text, kind=ReplyKind.FINAL)
    return UpdatePlan(message=None, upsert=use_upsert)


def waiting_reason(payload: Optional[HookPayload], reason: Optional[str] = None) -> Optional[str]:
    if reason:
        return reason
    if payload is None:
        return None
    if payload.message:
        return payload.message
    if payload.notification_type:
        return NOTIFICATION_REASONS.get(payload.notification_type, payload.notification_type)
    return None


def env_file_lines(job_id: Optional[str], env: Mapping[str, str]) -> list[str]:
    """`NAME=value` lines that let later hook invocations find this job."""
    lines = [f"{JOB_ID_ENV_VAR}={job_id}"] if job_id else []
    lines.extend(f"{name}={env[name]}" for name in SAVED_ENV_VARS if env.get(name))
    return lines


def save_env_file(env_file: Path, job_id: Optional[str], env: Mapping[str, str]) -> list[str]:
    """Append the job id and Slack settings to `env_file`; returns the saved names."""
    lines = env_file_lines(job_id, env)
    if lines:
        with env_file.open("a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
    return [line.split("=", 1)[0] for line in lines]
