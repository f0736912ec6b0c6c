"""Hive agent entry point.

Initializes all components and starts the server:
  Settings -> Provider -> ToolRegistry -> SessionManager -> App -> Uvicorn

Uses Starlette lifespan so the provider's httpx client lives on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from hive.api.rest import create_app
from hive.api.sessions import SessionManager
from hive.config import Settings
from hive.engine.approval import ApprovalGate
from hive.providers.anthropic import AnthropicProvider
from hive.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


def create_components(settings: Settings, registry: ToolRegistry | None = None) -> dict:
    """Build all components in dependency order.

    1. AnthropicProvider - httpx client with API credentials (started in lifespan)
    2. ToolRegistry - tools supplied by the host, empty when none are given
    3. SessionManager - sessions and the shared approval gate
    """
    provider = AnthropicProvider(settings)

    if registry is None:
        registry = ToolRegistry(tab_prefix=settings.tab_tool_prefix)

    approvals = ApprovalGate(timeout=settings.approval_timeout)
    sessions = SessionManager(provider, registry, settings, approvals=approvals)

    return {
        "provider": provider,
        "registry": registry,
        "sessions": sessions,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Hive...")

    provider = components.get("provider")
    if provider:
        await provider.close()

    logger.info("Hive shutdown complete.")


def build_app(settings: Settings, registry: ToolRegistry | None = None) -> Starlette:
    """Build the Starlette app.

    Routes are bound to the SessionManager when the app is built; the
    provider client is started and closed inside the lifespan.
    """
    components = create_components(settings, registry)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await components["provider"].start()
        app.state.components = components
        logger.info("Hive started: model=%s, max_steps=%d", settings.model, settings.max_steps)
        logger.info("Tools: %s", ", ".join(components["registry"].names()))
        yield
        await shutdown_components(components)

    return create_app(components["sessions"], lifespan=lifespan)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Hive agent")
    logger.info("Model: %s", settings.model)
    logger.info("Streaming: %s", "enabled" if settings.streaming_enabled else "disabled")

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- prompts will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
