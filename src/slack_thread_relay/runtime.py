from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .channel import ConversationChannel
from .config import RelayConfig
from .engine import LifecycleEngine
from .ledger import JobLedger
from .logging_utils import setup_rotating_logger
from .messages import MessageFormatter
from .slack import SlackChannel

LOGGER_NAME = "slack_thread_relay"


@dataclass
class RelayRuntime:
    """Everything one process owns: config, logger, ledger, channel, engine."""

    config: RelayConfig
    logger: logging.Logger
    ledger: JobLedger
    channel: ConversationChannel
    engine: LifecycleEngine

    async def aclose(self) -> None:
        await self.engine.aclose()
        close = getattr(self.channel, "aclose", None)
        if close is not None:
            await close()


def build_ledger(config: RelayConfig, logger: Optional[logging.Logger] = None) -> JobLedger:
    return JobLedger(config.state_path, logger=logger)


def build_runtime(
    config: RelayConfig,
    *,
    channel: Optional[ConversationChannel] = None,
    logger: Optional[logging.Logger] = None,
) -> RelayRuntime:
    logger = logger or setup_rotating_logger(LOGGER_NAME, config.log, debug=config.debug)
    formatter = MessageFormatter(prefix=config.post_prefix)
    if channel is None:
        config.validate()
        assert config.bot_token is not None
        channel = SlackChannel(
            config.bot_token,
            mention_user_ids=config.mention_user_ids,
            mention_group_id=config.mention_group_id,
            use_channel_mention=config.use_channel_mention,
            formatter=formatter,
            timeout=config.api_timeout_seconds,
            logger=logger,
        )
    ledger = build_ledger(config, logger)
    engine = LifecycleEngine(
        ledger,
        channel,
        default_channel=config.default_channel,
        formatter=formatter,
        lazy_create=config.lazy_create,
        watchdog_delay_ms=config.watchdog_delay_ms,
        logger=logger,
    )
    return RelayRuntime(
        config=config, logger=logger, ledger=ledger, channel=channel, engine=engine
    )
