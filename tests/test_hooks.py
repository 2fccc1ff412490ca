import json
from pathlib import Path

from slack_thread_relay.engine import ReplyKind
from slack_thread_relay.hooks import (
    DEFAULT_RESPONSE_TEXT,
    describe_tool,
    env_file_lines,
    last_assistant_response,
    parse_hook_payload,
    plan_update,
    save_env_file,
    waiting_reason,
)


def _payload(**fields):
    return parse_hook_payload(json.dumps(fields))


def _write_transcript(path: Path, entries) -> Path:
    path.write_text("\n".join(json.dumps(entry) for entry in entries) + "\n", encoding="utf-8")
    return path


def test_parse_hook_payload_rejects_non_objects():
    assert parse_hook_payload("") is None
    assert parse_hook_payload("   ") is None
    assert parse_hook_payload("not json") is None
    assert parse_hook_payload("[1, 2]") is None


def test_parse_hook_payload_reads_known_fields():
    payload = _payload(
        session_id="sess-1",
        hook_event_name="PostToolUse",
        cwd="/work/repo",
        tool_name="Bash",
        tool_input={"command": "make test"},
        unknown="ignored",
    )

    assert payload.session_id == "sess-1"
    assert payload.is_post_tool_use
    assert payload.tool_input == {"command": "make test"}


def test_describe_tool_variants():
    assert describe_tool("Read", {"file_path": "src/app.py"}) == "*Read*: `src/app.py`"
    assert describe_tool("Grep", {"pattern": "TODO"}) == "*Grep*: `TODO`"
    assert describe_tool("Task", {"description": "explore"}) == "*Task*: explore"
    assert describe_tool("WebFetch", {}) == "*WebFetch*"
    long_command = "x" * 80
    assert describe_tool("Bash", {"command": long_command}) == f"*Bash*: `{'x' * 50}...`"


def test_post_tool_use_upserts_tool_description():
    plan = plan_update(
        _payload(hook_event_name="PostToolUse", tool_name="Edit", tool_input={"file_path": "a.py"})
    )

    assert plan.message == "*Edit*: `a.py`"
    assert plan.kind is ReplyKind.PROGRESS
    assert plan.upsert is True


def test_prompt_submit_starts_a_new_turn():
    plan = plan_update(_payload(hook_event_name="UserPromptSubmit", prompt="p" * 150))

    assert plan.kind is ReplyKind.TURN_START
    assert plan.message == f"*Prompt:* {'p' * 100}..."
    assert plan.upsert is False


def test_stop_posts_final_response(tmp_path: Path):
    transcript = _write_transcript(
        tmp_path / "t.jsonl",
        [
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "early"}]}},
            {"type": "user", "message": {"content": "thanks"}},
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Bash"},
                        {"type": "text", "text": "All tests pass."},
                    ]
                },
            },
        ],
    )

    plan = plan_update(_payload(hook_event_name="Stop", transcript_path=str(transcript)))

    assert plan.kind is ReplyKind.FINAL
    assert plan.message == "*Response:* All tests pass."


def test_stop_without_readable_transcript_uses_fallback(tmp_path: Path):
    plan = plan_update(
        _payload(hook_event_name="Stop", transcript_path=str(tmp_path / "missing.jsonl"))
    )

    assert plan.message == DEFAULT_RESPONSE_TEXT
    assert plan.kind is ReplyKind.FINAL


def test_last_assistant_response_truncates_and_skips_bad_lines(tmp_path: Path):
    path = tmp_path / "t.jsonl"
    path.write_text(
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "y" * 300}]}})
        + "\n{broken\n",
        encoding="utf-8",
    )

    assert last_assistant_response(str(path)) == "y" * 200 + "..."


def test_explicit_message_wins_over_payload():
    payload = _payload(hook_event_name="UserPromptSubmit", prompt="ignored")

    plan = plan_update(payload, "Deploying", upsert=False)

    assert plan.message == "Deploying"
    assert plan.kind is ReplyKind.PROGRESS


def test_no_payload_and_no_message_has_nothing_to_post():
    assert plan_update(None).message is None
    assert plan_update(_payload(hook_event_name="SessionStart")).message is None


def test_waiting_reason_precedence():
    notification = _payload(notification_type="permission_prompt")

    assert waiting_reason(notification, "explicit") == "explicit"
    assert waiting_reason(_payload(message="Agent needs your input")) == "Agent needs your input"
    assert waiting_reason(notification) == "Waiting for permission"
    assert waiting_reason(_payload(notification_type="custom")) == "custom"
    assert waiting_reason(None) is None


def test_env_file_lines_skip_unset_variables():
    lines = env_file_lines("sess-1", {"SLACK_BOT_TOKEN": "xoxb", "SLACK_POST_PREFIX": ""})

    assert lines == ["SLACK_THREAD_JOB_ID=sess-1", "SLACK_BOT_TOKEN=xoxb"]


def test_save_env_file_appends(tmp_path: Path):
    env_file = tmp_path / "session.env"
    env_file.write_text("EXISTING=1\n", encoding="utf-8")

    saved = save_env_file(env_file, "sess-1", {"SLACK_DEFAULT_CHANNEL": "C1"})

    assert saved == ["SLACK_THREAD_JOB_ID", "SLACK_DEFAULT_CHANNEL"]
    assert env_file.read_text(encoding="utf-8") == (
        "EXISTING=1\nSLACK_THREAD_JOB_ID=sess-1\nSLACK_DEFAULT_CHANNEL=C1\n"
    )
