"""Read-only HTTP query API over the netflow aggregate.

FastAPI app; the orchestrator injects the store and aggregate key into
``state`` at startup. Handlers only read, never trigger ingestion.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, status
from pydantic import BaseModel

from netflow.utils.logger import get_logger

logger = get_logger("query_api")


# ---------------------------------------------------------------------------
# Shared state, set by the orchestrator before serving
# ---------------------------------------------------------------------------


class ApiState:
    """Shared state injected by orchestrator."""

    store: Any = None
    indexer: Any = None
    rpc: Any = None
    stream: Any = None
    exchange_name: str = ""
    exchange_id: int = 0
    token: str = ""
    token_symbol: str = ""


state = ApiState()


class NetflowResponse(BaseModel):
    exchange: str
    token: str
    token_symbol: str
    cumulative_in: float
    cumulative_out: float
    cumulative_net: float
    last_updated_block: int


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(title="Exchange Netflow", docs_url=None, redoc_url=None)


def _require_store() -> Any:
    if state.store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Store not available",
        )
    return state.store


@app.get("/netflow", response_model=NetflowResponse)
async def get_netflow() -> NetflowResponse:
    """Current totals for the configured exchange and token.

    No row yet means all-zero totals at block 0, not an error.
    """
    store = _require_store()
    try:
        aggregate = await store.fetch(state.exchange_id, state.token)
    except Exception as e:
        logger.warning("netflow_fetch_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Aggregate store unavailable",
        ) from e

    if aggregate is None:
        return NetflowResponse(
            exchange=state.exchange_name,
            token=state.token,
            token_symbol=state.token_symbol,
            cumulative_in=0.0,
            cumulative_out=0.0,
            cumulative_net=0.0,
            last_updated_block=0,
        )
    return NetflowResponse(
        exchange=state.exchange_name,
        token=aggregate.token,
        token_symbol=aggregate.token_symbol,
        cumulative_in=aggregate.cumulative_in,
        cumulative_out=aggregate.cumulative_out,
        cumulative_net=aggregate.cumulative_net,
        last_updated_block=aggregate.last_updated_block,
    )


@app.get("/health")
async def health() -> dict[str, Any]:
    """Liveness plus pipeline counters."""
    store = _require_store()
    try:
        checkpoint = await store.get_checkpoint()
    except Exception as e:
        logger.warning("health_checkpoint_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Aggregate store unavailable",
        ) from e

    body: dict[str, Any] = {"status": "ok", "checkpoint": checkpoint}
    if state.indexer is not None:
        body["indexer"] = state.indexer.stats
    if state.rpc is not None:
        body["rpc"] = state.rpc.stats
    if state.stream is not None:
        body["feed"] = state.stream.stats
    return body
