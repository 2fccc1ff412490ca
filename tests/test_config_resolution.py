from pathlib import Path

import pytest
import yaml

from slack_thread_relay.config import DEFAULT_WATCHDOG_DELAY_MS, ConfigError, load_config


def _write_global(tmp_path: Path, data) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_defaults_without_any_source(tmp_path: Path):
    config = load_config(tmp_path, env={}, config_paths=[tmp_path / "missing.yml"])

    assert config.bot_token is None
    assert config.default_channel is None
    assert config.source_path is None
    assert config.lazy_create is True
    assert config.watchdog_enabled is True
    assert config.watchdog_delay_ms == DEFAULT_WATCHDOG_DELAY_MS
    assert config.state_path is None
    assert config.server_port == 4180
    with pytest.raises(ConfigError):
        config.validate()


def test_env_overrides_global_file(tmp_path: Path):
    global_path = _write_global(
        tmp_path,
        {
            "slack": {
                "bot_token": "xoxb-file",
                "default_channel": "CFILE",
                "mention_user_ids": ["U1"],
                "post_prefix": "[file]",
            },
            "watchdog": {"delay_ms": 5000},
        },
    )
    env = {
        "SLACK_DEFAULT_CHANNEL": "CENV",
        "SLACK_MENTION_USER_IDS": "U7, U8,,",
        "THREAD_STATE_PATH": str(tmp_path / "threads.json"),
    }

    config = load_config(tmp_path, env=env, config_paths=[global_path])

    assert config.source_path == global_path
    assert config.bot_token == "xoxb-file"
    assert config.default_channel == "CENV"
    assert config.mention_user_ids == ["U7", "U8"]
    assert config.post_prefix == "[file]"
    assert config.watchdog_delay_ms == 5000
    assert config.state_path == tmp_path / "threads.json"
    config.validate()


def test_first_existing_global_file_wins(tmp_path: Path):
    second = _write_global(tmp_path, {"slack": {"default_channel": "CSECOND"}})

    config = load_config(tmp_path, env={}, config_paths=[tmp_path / "nope.yml", second])

    assert config.default_channel == "CSECOND"


def test_json_global_file_is_accepted(tmp_path: Path):
    path = tmp_path / "config.json"
    path.write_text('{"slack": {"bot_token": "xoxb-json"}}', encoding="utf-8")

    config = load_config(tmp_path, env={}, config_paths=[path])

    assert config.bot_token == "xoxb-json"


def test_debug_env_flag(tmp_path: Path):
    config = load_config(
        tmp_path, env={"SLACK_THREAD_DEBUG": "true"}, config_paths=[tmp_path / "missing.yml"]
    )

    assert config.debug is True


def test_dotenv_does_not_override_process_env(tmp_path: Path, monkeypatch):
    (tmp_path / ".env").write_text(
        "SLACK_BOT_TOKEN=xoxb-dotenv\nSLACK_DEFAULT_CHANNEL=CDOTENV\n", encoding="utf-8"
    )
    monkeypatch.setenv("SLACK_DEFAULT_CHANNEL", "CPROCESS")
    monkeypatch.setenv("SLACK_BOT_TOKEN", "placeholder")
    monkeypatch.delenv("SLACK_BOT_TOKEN")

    config = load_config(tmp_path, config_paths=[tmp_path / "missing.yml"])

    assert config.bot_token == "xoxb-dotenv"
    assert config.default_channel == "CPROCESS"


@pytest.mark.parametrize(
    "data",
    [
        {"slack": "not-a-mapping"},
        {"slack": {"bot_token": 123}},
        {"slack": {"mention_user_ids": 5}},
        {"watchdog": {"delay_ms": 0}},
        {"watchdog": {"delay_ms": True}},
        {"server": {"port": "eighty"}},
    ],
)
def test_invalid_shapes_raise(tmp_path: Path, data):
    path = _write_global(tmp_path, data)

    with pytest.raises(ConfigError):
        load_config(tmp_path, env={}, config_paths=[path])


def test_non_mapping_file_raises(tmp_path: Path):
    path = tmp_path / "config.yml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(tmp_path, env={}, config_paths=[path])
