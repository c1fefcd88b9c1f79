"""Entry point for the recurring investment engine.

Wires all components together, optionally embeds the FastAPI API, and
starts the plan scheduler. When the API is enabled (default), the scheduler
and the API share a single asyncio event loop via uvicorn's programmatic
API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. AppSettings (configuration)
2. Logging setup
3. PlanDatabase + PlanStore + TransactionLedger (persistence)
4. PriceFeed (CoinGecko or exchange OHLCV)
5. MarketFeed + BestMarketCache + MarketRanker (lending markets)
6. SizingService (momentum and risk sizing)
7. ChainExecutor (MockChainExecutor or LiveChainExecutor based on mode)
8. ExecutionPipeline (convert + deposit)
9. PlanRunner (scheduler)
10. InterestAccrual + PlanService (user-facing services)
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from dca.analysis.sizing import SizingService
from dca.config import AppSettings
from dca.data.database import PlanDatabase
from dca.data.store import PlanStore
from dca.feeds.market_feed import JouleMarketFeed
from dca.feeds.price_feed import CoinGeckoPriceFeed, ExchangePriceFeed, PriceFeed
from dca.interest import InterestAccrual
from dca.ledger import TransactionLedger
from dca.logging import get_logger, setup_logging
from dca.markets.cache import BestMarketCache
from dca.markets.ranker import MarketRanker
from dca.pipeline import ExecutionPipeline
from dca.plans import PlanService
from dca.runner import PlanRunner


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all engine components from settings.

    Note: Does NOT open the database or the chain connection -- that happens
    in _start_components().

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("dca.main")

    # 3. Persistence
    database = PlanDatabase(settings.store.db_path)
    store = PlanStore(database)
    ledger = TransactionLedger(store)

    # 4. Price feed
    price_feed: PriceFeed
    if settings.price_feed.provider == "exchange":
        price_feed = ExchangePriceFeed(settings.price_feed)
    else:
        price_feed = CoinGeckoPriceFeed(settings.price_feed)

    # 5. Lending markets
    market_feed = JouleMarketFeed(settings.market)
    ranker = MarketRanker(
        market_feed,
        settings.market,
        cache=BestMarketCache(settings.market.cache_path),
    )
    if settings.market.allow_fallback:
        logger.warning(
            "market_fallback_enabled",
            note="Static example markets may be served, labelled source=fallback",
        )

    # 6. Sizing
    sizing = SizingService(price_feed, settings.price_feed, settings.scheduler)

    # 7. Executor based on mode
    chain_client = None
    if settings.chain.mode == "live":
        from dca.chain.aptos_client import AptosChainClient
        from dca.execution.live_executor import LiveChainExecutor

        chain_client = AptosChainClient(settings.chain)
        executor = LiveChainExecutor(chain_client, settings.chain)
    else:
        from dca.execution.mock_executor import MockChainExecutor

        executor = MockChainExecutor(settings.chain)
        logger.warning(
            "mock_chain_executor",
            mode="mock",
            note="Conversions and deposits are simulated in memory",
        )

    # 8-9. Pipeline and scheduler
    pipeline = ExecutionPipeline(executor, sizing, ranker, ledger, settings.chain)
    runner = PlanRunner(store, pipeline, settings.scheduler)

    # 10. User-facing services
    interest = InterestAccrual(ranker)
    plan_service = PlanService(store, ledger)

    return {
        "database": database,
        "store": store,
        "ledger": ledger,
        "price_feed": price_feed,
        "market_feed": market_feed,
        "ranker": ranker,
        "sizing": sizing,
        "chain_client": chain_client,
        "executor": executor,
        "pipeline": pipeline,
        "runner": runner,
        "interest": interest,
        "plan_service": plan_service,
    }


async def _start_components(components: dict[str, Any]) -> None:
    await components["database"].connect()
    if components["chain_client"] is not None:
        await components["chain_client"].connect()
    await components["ranker"].start()
    await components["runner"].start()


async def _stop_components(components: dict[str, Any]) -> None:
    """Stop the scheduler first so no new tick starts during teardown."""
    await components["runner"].stop()
    await components["ranker"].stop()
    await components["price_feed"].close()
    await components["market_feed"].close()
    if components["chain_client"] is not None:
        await components["chain_client"].close()
    await components["database"].close()


def _setup_signal_handlers(stop_event: asyncio.Event) -> None:
    """Register SIGINT/SIGTERM to trigger graceful shutdown.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("dca.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage engine component lifecycle within the FastAPI application.

    On startup: stores components on app.state, opens the database and chain
    connection, starts the market refresh loop and the scheduler.

    On shutdown: stops the scheduler (waiting for in-flight plans), then
    releases every network and database resource.
    """
    logger = get_logger("dca.main")
    settings = app.state.settings
    components = app.state.components

    app.state.plan_service = components["plan_service"]
    app.state.ledger = components["ledger"]
    app.state.pipeline = components["pipeline"]
    app.state.runner = components["runner"]
    app.state.ranker = components["ranker"]
    app.state.interest = components["interest"]

    await _start_components(components)
    logger.info("lifespan_started", chain_mode=settings.chain.mode)

    yield

    await _stop_components(components)
    logger.info("recurring_investment_engine_stopped")


async def run() -> None:
    """Run the recurring investment engine.

    When the API is enabled (API_ENABLED=true, the default) the scheduler
    runs inside the uvicorn server's lifespan. Otherwise the scheduler runs
    until SIGINT/SIGTERM.
    """
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("dca.main")

    # 3-10. Build all components
    components = _build_components(settings)

    if settings.api.enabled:
        from dca.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            chain_mode=settings.chain.mode,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        stop_event = asyncio.Event()
        _setup_signal_handlers(stop_event)

        logger.info(
            "starting_without_api",
            chain_mode=settings.chain.mode,
            tick_interval=settings.scheduler.tick_interval_seconds,
            price_provider=settings.price_feed.provider,
        )

        await _start_components(components)
        try:
            await stop_event.wait()
        finally:
            await _stop_components(components)
            logger.info("recurring_investment_engine_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
