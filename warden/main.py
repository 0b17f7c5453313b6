"""Warden proxy entry point.

Initializes all components and starts the server:
  Settings -> Database -> Stores -> Ledger -> Policies -> Quarantine -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from warden.config import Settings
from warden.ledger import InteractionLedger
from warden.policies import ToolInvocationEngine, TrustedDataEvaluator
from warden.proxy.app import create_app
from warden.proxy.pipeline import ChatInterceptor
from warden.quarantine import DualModelController, QuarantineEvaluator, create_model_client
from warden.storage.database import Database
from warden.storage.migrator import run_migrations
from warden.storage.repositories import SqlLedgerStore, SqlPolicyStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    1. Database - connection pool, migrations applied
    2. Stores + InteractionLedger
    3. Policy evaluators
    4. Quarantine controller on its own text-only model client
    5. ChatInterceptor - ties them together for the router
    """
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)

    http = httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.upstream_timeout_connect,
            read=settings.upstream_timeout_read,
            write=30,
            pool=10,
        ),
    )

    ledger = InteractionLedger(SqlLedgerStore(database))
    policies = SqlPolicyStore(database)

    controller = DualModelController(
        create_model_client(settings, http),
        temperature=settings.dual_llm_temperature,
        timeout=settings.dual_llm_timeout,
    )
    interceptor = ChatInterceptor(
        ledger=ledger,
        policies=policies,
        trusted_data=TrustedDataEvaluator(policies, ledger),
        invocation=ToolInvocationEngine(policies),
        quarantine=QuarantineEvaluator(ledger, controller),
    )

    return {
        "database": database,
        "http": http,
        "ledger": ledger,
        "policies": policies,
        "interceptor": interceptor,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Warden...")

    http = components.get("http")
    if http:
        await http.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Warden shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info("Warden listening on %s:%d", settings.host, settings.port)
        yield
        await shutdown_components(components)

    return create_app(
        settings=settings,
        http_client=_lazy_component(components, "http"),
        ledger=_lazy_component(components, "ledger"),
        interceptor=_lazy_component(components, "interceptor"),
        database=_lazy_component(components, "database"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized: lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Warden proxy")
    logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    logger.info("Dual LLM: %s (%s)", settings.dual_llm_provider, settings.dual_llm_model)

    if not settings.dual_llm_api_key:
        logger.warning("WARDEN_DUAL_LLM_API_KEY not set, quarantine analysis will fail closed")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
