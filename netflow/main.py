"""Orchestrator: wires config, store, feed, indexer and the query API.

Architecture:
- NetflowOrchestrator owns every component instance
- Two long-lived asyncio tasks: the ingestion loop and the uvicorn server
- They share only the AggregateStore
- Startup failures (config, store, feed, RPC) propagate out of start()
- Graceful shutdown on SIGINT/SIGTERM: set asyncio.Event, cancel tasks, close sessions
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from typing import Any

from netflow.config.settings import NetflowConfig, get_config
from netflow.utils.logger import get_logger

logger = get_logger("orchestrator")


class NetflowOrchestrator:
    """Runs the indexer and/or the query API until shutdown.

    Lifecycle: ``__init__`` -> ``start()`` -> runs until the feed ends,
    ``stop()``, or a signal.

    Args:
        ingest: Run the ingestion loop (``run`` mode). False serves the API only.
        serve_api: Run the HTTP query API.
        config: Settings; defaults to ``get_config()``.
    """

    def __init__(
        self,
        ingest: bool = True,
        serve_api: bool = True,
        config: NetflowConfig | None = None,
    ) -> None:
        self._ingest = ingest
        self._serve_api = serve_api
        self._config = config or get_config()

        self._shutdown_event = asyncio.Event()
        self._tasks: dict[str, asyncio.Task[None]] = {}

        # Components (initialized in start())
        self._store: Any = None
        self._rpc: Any = None
        self._stream: Any = None
        self._indexer: Any = None

        self._start_time: float = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize components and run until shutdown.

        Raises:
            ConfigError, LogStreamError, RpcError, SQLAlchemyError: startup
                failures; nothing is served or ingested.
        """
        logger.info("netflow_starting", ingest=self._ingest, serve_api=self._serve_api)
        self._start_time = time.monotonic()

        try:
            await self._init_components()
        except BaseException:
            await self.stop()
            raise

        self._install_signal_handlers()
        if self._ingest:
            self._tasks["indexer"] = asyncio.create_task(self._run_indexer(), name="indexer")
        if self._serve_api:
            self._tasks["api"] = asyncio.create_task(self._run_api(), name="api")

        logger.info("netflow_started", tasks=sorted(self._tasks))

        # Block until shutdown or a task exits
        waiter = asyncio.create_task(self._shutdown_event.wait(), name="shutdown_wait")
        done, _ = await asyncio.wait(
            [waiter, *self._tasks.values()], return_when=asyncio.FIRST_COMPLETED
        )
        waiter.cancel()

        failure: BaseException | None = None
        for name, task in self._tasks.items():
            if task in done and not task.cancelled() and task.exception() is not None:
                failure = task.exception()
                logger.error("task_failed", task=name, error=str(failure))

        await self.stop()
        if failure is not None:
            raise failure

    async def stop(self) -> None:
        """Graceful shutdown: cancel tasks, close sessions and the engine."""
        logger.info("netflow_stopping")
        self._shutdown_event.set()

        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        for task in self._tasks.values():
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._tasks.clear()

        if self._stream is not None:
            with contextlib.suppress(Exception):
                await self._stream.close()
        if self._rpc is not None:
            with contextlib.suppress(Exception):
                await self._rpc.close()

        from netflow.utils.db import dispose_engine

        await dispose_engine()

        uptime = time.monotonic() - self._start_time if self._start_time else 0.0
        stats = self._indexer.stats if self._indexer is not None else {}
        logger.info("netflow_stopped", uptime_s=round(uptime, 1), **stats)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def _init_components(self) -> None:
        """Build the store, then (in run mode) the RPC client, indexer and feed."""
        from netflow.api.web import state
        from netflow.core.store import AggregateStore
        from netflow.utils.db import get_session_factory, init_db

        cfg = self._config
        if self._ingest:
            cfg.check_ingestion_ready()

        await init_db()
        self._store = AggregateStore(get_session_factory())
        logger.info("store_ready", database_url=cfg.database_url)

        state.store = self._store
        state.exchange_name = cfg.exchange_name
        state.exchange_id = cfg.exchange_id
        state.token = cfg.token_address
        state.token_symbol = cfg.token_symbol

        if not self._ingest:
            return

        from netflow.connectors.log_stream import TransferLogStream
        from netflow.connectors.polygon_rpc import PolygonRpcClient
        from netflow.core.classifier import WatchedAddressSet
        from netflow.core.indexer import TransferIndexer

        idx_cfg = cfg.indexer
        self._rpc = PolygonRpcClient(
            cfg.polygon_rpc_http,
            timeout_s=idx_cfg.rpc_timeout_s,
            max_retries=idx_cfg.rpc_max_retries,
            base_delay_s=idx_cfg.rpc_base_delay_s,
            block_cache_size=idx_cfg.block_cache_size,
        )
        self._indexer = TransferIndexer(
            store=self._store,
            rpc=self._rpc,
            watched=WatchedAddressSet(cfg.exchange_address_list),
            exchange_id=cfg.exchange_id,
            token=cfg.token_address,
            symbol=cfg.token_symbol,
            decimals=cfg.token_decimals,
        )
        await self._indexer.initialize()
        state.indexer = self._indexer
        state.rpc = self._rpc

        self._stream = TransferLogStream(
            cfg.polygon_rpc_ws,
            cfg.token_address,
            subscribe_timeout_s=idx_cfg.subscribe_timeout_s,
            heartbeat_s=idx_cfg.ws_heartbeat_s,
        )
        await self._stream.connect()
        state.stream = self._stream

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, self._shutdown_event.set)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _run_indexer(self) -> None:
        """Stream logs into the indexer; returning ends the process."""
        await self._indexer.run(self._stream.logs())

    async def _run_api(self) -> None:
        """Run the query API in background."""
        import uvicorn

        from netflow.api.web import app

        config = uvicorn.Config(
            app,
            host=self._config.api.host,
            port=self._config.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
