from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .channel import ConversationChannel
from .config import RelayConfig
from .logging_utils import safe_log
from .routes import build_job_routes
from .runtime import RelayRuntime, build_runtime


def _app_lifespan(runtime: RelayRuntime):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        safe_log(
            runtime.logger,
            logging.INFO,
            "Relay server ready (state: %s)",
            runtime.ledger.path or "memory",
        )
        try:
            yield
        finally:
            try:
                await runtime.aclose()
            except Exception as exc:
                safe_log(runtime.logger, logging.WARNING, "Relay shutdown failed", exc=exc)

    return lifespan


def create_app(
    config: RelayConfig,
    channel: Optional[ConversationChannel] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> FastAPI:
    """
    Build the tool-call HTTP app. A `channel` may be injected (tests); otherwise
    a Slack channel is built from `config`, which must then be complete.
    """
    runtime = build_runtime(config, channel=channel, logger=logger)
    app = FastAPI(
        title="slack-thread-relay",
        version=__version__,
        redirect_slashes=False,
        lifespan=_app_lifespan(runtime),
    )
    app.state.runtime = runtime
    app.state.config = config
    app.state.engine = runtime.engine
    app.state.logger = runtime.logger
    app.state.watchdog_enabled = config.watchdog_enabled
    app.include_router(build_job_routes())
    return app
