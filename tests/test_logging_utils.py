import logging
from pathlib import Path

from slack_thread_relay.config import LogConfig
from slack_thread_relay.logging_utils import log_event, safe_log, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("relay:a", cfg_a)
    logger_b = setup_rotating_logger("relay:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()

    same_logger = setup_rotating_logger("relay:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_debug_flag_lowers_level(tmp_path: Path):
    cfg = LogConfig(path=tmp_path / "debug.log", max_bytes=10_000, backup_count=1)

    logger = setup_rotating_logger("relay:debug", cfg, debug=True)

    assert logger.level == logging.DEBUG
    assert setup_rotating_logger("relay:debug", cfg).level == logging.INFO


def test_log_event_writes_json_fields(tmp_path: Path):
    cfg = LogConfig(path=tmp_path / "events.log", max_bytes=10_000, backup_count=1)
    logger = setup_rotating_logger("relay:events", cfg)

    log_event(
        logger,
        logging.INFO,
        "engine.thread.created",
        job_id="j1",
        lazy=True,
        exc=ValueError("bad"),
    )
    logger.handlers[0].flush()

    line = (tmp_path / "events.log").read_text(encoding="utf-8").strip()
    assert line.endswith(
        'engine.thread.created job_id="j1" lazy=true error="ValueError: bad"'
    )


def test_log_event_skips_disabled_levels(tmp_path: Path):
    cfg = LogConfig(path=tmp_path / "quiet.log", max_bytes=10_000, backup_count=1)
    logger = setup_rotating_logger("relay:quiet", cfg)

    log_event(logger, logging.DEBUG, "watchdog.armed", job_id="j1")
    logger.handlers[0].flush()

    assert (tmp_path / "quiet.log").read_text(encoding="utf-8") == ""


def test_safe_log_never_raises():
    class Broken(logging.Logger):
        def log(self, *args, **kwargs):
            raise RuntimeError("handler exploded")

    safe_log(Broken("broken"), logging.INFO, "value %s %s", "only-one")
    log_event(Broken("broken"), logging.INFO, "event", field=object())
