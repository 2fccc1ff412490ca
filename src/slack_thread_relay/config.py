import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml
from dotenv import load_dotenv

GLOBAL_CONFIG_PATHS = (
    Path("~/.config/slack-thread-relay/config.yml"),
    Path("~/.slack-thread-relay.yml"),
)
DEFAULT_WATCHDOG_DELAY_MS = 30_000

DEFAULT_CONFIG: Dict[str, Any] = {
    "slack": {
        "bot_token": None,
        "default_channel": None,
        "mention_user_ids": [],
        "mention_group_id": None,
        "use_channel_mention": True,
        "post_prefix": None,
        "timeout_seconds": 10.0,
    },
    "threads": {
        "state_path": None,
        "lazy_create": True,
    },
    "watchdog": {
        "enabled": True,
        "delay_ms": DEFAULT_WATCHDOG_DELAY_MS,
    },
    "log": {
        "path": "~/.slack-thread-relay/relay.log",
        "max_bytes": 5_000_000,
        "backup_count": 3,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 4180,
    },
    "debug": False,
}

# Environment variables win over the global config file.
ENV_OVERRIDES = {
    "SLACK_BOT_TOKEN": ("slack", "bot_token"),
    "SLACK_DEFAULT_CHANNEL": ("slack", "default_channel"),
    "SLACK_MENTION_USER_IDS": ("slack", "mention_user_ids"),
    "SLACK_MENTION_GROUP_ID": ("slack", "mention_group_id"),
    "SLACK_POST_PREFIX": ("slack", "post_prefix"),
    "THREAD_STATE_PATH": ("threads", "state_path"),
}
DEBUG_ENV_VARS = ("SLACK_THREAD_DEBUG", "DEBUG")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class RelayConfig:
    raw: Dict[str, Any]
    source_path: Optional[Path]
    bot_token: Optional[str]
    default_channel: Optional[str]
    mention_user_ids: List[str]
    mention_group_id: Optional[str]
    use_channel_mention: bool
    post_prefix: Optional[str]
    api_timeout_seconds: float
    state_path: Optional[Path]
    lazy_create: bool
    watchdog_enabled: bool
    watchdog_delay_ms: int
    log: LogConfig
    server_host: str
    server_port: int
    debug: bool

    def validate(self) -> None:
        """Require the settings needed to post to Slack."""
        issues: list[str] = []
        if not self.bot_token:
            issues.append("SLACK_BOT_TOKEN is not set")
        if not self.default_channel:
            issues.append("SLACK_DEFAULT_CHANNEL is not set")
        if issues:
            paths = ", ".join(str(p) for p in GLOBAL_CONFIG_PATHS)
            raise ConfigError(
                "; ".join(issues)
                + f" (set via environment, .env file, or global config: {paths})"
            )


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_id_list(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        items: Sequence[Any] = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        items = raw
    else:
        raise ConfigError("slack.mention_user_ids must be a list or comma-separated string")
    return [str(item).strip() for item in items if str(item).strip()]


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    return bool(raw)


def _load_dotenv_for_cwd(cwd: Path) -> None:
    """Best-effort load of the project .env; the process env keeps priority."""
    try:
        candidate = cwd / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def find_global_config_path(
    candidates: Optional[Sequence[Path]] = None,
) -> Optional[Path]:
    for candidate in candidates or GLOBAL_CONFIG_PATHS:
        path = Path(candidate).expanduser()
        if path.exists():
            return path
    return None


def _read_config_file(path: Path) -> Dict[str, Any]:
    # YAML is a superset of JSON, so legacy config.json files parse too.
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    for env_key, (section, key) in ENV_OVERRIDES.items():
        value = env.get(env_key)
        if value:
            cfg[section][key] = value
    for env_key in DEBUG_ENV_VARS:
        if env.get(env_key):
            cfg["debug"] = _parse_bool(env[env_key])
            break


def load_config(
    cwd: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    config_paths: Optional[Sequence[Path]] = None,
) -> RelayConfig:
    """
    Resolve configuration from, in priority order: environment variables
    (including a project-local .env), the first global config file found,
    and built-in defaults.
    """
    if env is None:
        _load_dotenv_for_cwd((cwd or Path.cwd()).resolve())
        env = os.environ
    config_path = find_global_config_path(config_paths)
    data = _read_config_file(config_path) if config_path else {}
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _apply_env_overrides(merged, env)
    _validate_config(merged)
    return _build_config(config_path, merged)


def _build_config(config_path: Optional[Path], cfg: Dict[str, Any]) -> RelayConfig:
    slack_cfg = cfg["slack"]
    threads_cfg = cfg["threads"]
    watchdog_cfg = cfg["watchdog"]
    log_cfg = cfg["log"]
    state_path_raw = threads_cfg.get("state_path")
    state_path = Path(state_path_raw).expanduser() if state_path_raw else None
    return RelayConfig(
        raw=cfg,
        source_path=config_path,
        bot_token=slack_cfg.get("bot_token") or None,
        default_channel=slack_cfg.get("default_channel") or None,
        mention_user_ids=_parse_id_list(slack_cfg.get("mention_user_ids")),
        mention_group_id=slack_cfg.get("mention_group_id") or None,
        use_channel_mention=_parse_bool(slack_cfg.get("use_channel_mention", True)),
        post_prefix=slack_cfg.get("post_prefix") or None,
        api_timeout_seconds=float(slack_cfg.get("timeout_seconds", 10.0)),
        state_path=state_path,
        lazy_create=_parse_bool(threads_cfg.get("lazy_create", True)),
        watchdog_enabled=_parse_bool(watchdog_cfg.get("enabled", True)),
        watchdog_delay_ms=int(watchdog_cfg.get("delay_ms", DEFAULT_WATCHDOG_DELAY_MS)),
        log=LogConfig(
            path=Path(str(log_cfg["path"])).expanduser(),
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
        server_host=str(cfg["server"]["host"]),
        server_port=int(cfg["server"]["port"]),
        debug=_parse_bool(cfg.get("debug", False)),
    )


def _validate_config(cfg: Dict[str, Any]) -> None:
    for section in ("slack", "threads", "watchdog", "log", "server"):
        if not isinstance(cfg.get(section), dict):
            raise ConfigError(f"{section} section must be a mapping")
    slack_cfg = cfg["slack"]
    for key in ("bot_token", "default_channel", "mention_group_id", "post_prefix"):
        value = slack_cfg.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"slack.{key} must be a string if provided")
    _parse_id_list(slack_cfg.get("mention_user_ids"))
    if not isinstance(slack_cfg.get("timeout_seconds", 0), (int, float)):
        raise ConfigError("slack.timeout_seconds must be a number")
    state_path = cfg["threads"].get("state_path")
    if state_path is not None and not isinstance(state_path, str):
        raise ConfigError("threads.state_path must be a string path if provided")
    delay = cfg["watchdog"].get("delay_ms")
    if not isinstance(delay, int) or isinstance(delay, bool) or delay <= 0:
        raise ConfigError("watchdog.delay_ms must be a positive integer")
    log_cfg = cfg["log"]
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")
    server = cfg["server"]
    if not isinstance(server.get("host", ""), str):
        raise ConfigError("server.host must be a string")
    if not isinstance(server.get("port", 0), int):
        raise ConfigError("server.port must be an integer")
