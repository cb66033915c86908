# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds a ready-to-serve FastAPI application from
:func:`load_settings` and starts/stops the dispatch core with the
application lifespan.

Usage:
    uvicorn send_guard.server:app --host 0.0.0.0 --port 8000

Environment variables:
    SG_CONFIG: Path to the INI configuration file (default: config.ini)
    SG_LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import Settings, load_settings
from .core import DispatchCore
from .device_client import HttpAccountClient


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def build_app(settings: Settings) -> FastAPI:
    """Create the core, its device client and the API around them."""
    client = HttpAccountClient(
        settings.device_url,
        token=settings.device_token,
        timeout=settings.device_timeout,
    )
    core = DispatchCore(client=client, **settings.core_kwargs())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        try:
            yield
        finally:
            await core.stop()
            await client.close()

    return create_app(core, api_token=settings.api_token, admin_token=settings.admin_token, lifespan=lifespan)


_settings = load_settings()
configure_logging(_settings.log_level)
app = build_app(_settings)
