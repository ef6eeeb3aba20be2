"""FastAPI application serving the chaindata registry."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from cachetools import TTLCache
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

from chaindata.config import get_settings
from chaindata.database import EntityStore, db
from chaindata.indexer import BlockWatcher
from chaindata.models import Chain, EvmNetwork, HealthResponse, PipelineStatus, Token, TokenBase
from chaindata.pipeline import create_context

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Response cache (TTL = 30 seconds)
response_cache: TTLCache = TTLCache(maxsize=100, ttl=30)

# API reads go through their own connection and only see committed runs
reader = EntityStore()

# Prometheus metrics
REQUEST_COUNT = Counter(
    'chaindata_requests_total',
    'Total requests',
    ['method', 'endpoint', 'status']
)
REQUEST_LATENCY = Histogram(
    'chaindata_request_latency_seconds',
    'Request latency',
    ['endpoint']
)
CHAIN_COUNT = Gauge(
    'chaindata_chain_count',
    'Number of chains',
    ['healthy']
)
EVM_NETWORK_COUNT = Gauge(
    'chaindata_evm_network_count',
    'Number of evm networks',
    ['healthy']
)
TOKEN_COUNT = Gauge(
    'chaindata_token_count',
    'Number of tokens'
)

# Background task reference
watch_task: Optional[asyncio.Task] = None
metrics_task: Optional[asyncio.Task] = None
watcher: Optional[BlockWatcher] = None


async def update_metrics():
    """Background task to update Prometheus metrics."""
    while True:
        try:
            chains = await reader.find(Chain)
            evm_networks = await reader.find(EvmNetwork)
            CHAIN_COUNT.labels(healthy="true").set(sum(1 for chain in chains if chain.is_healthy))
            CHAIN_COUNT.labels(healthy="false").set(sum(1 for chain in chains if not chain.is_healthy))
            EVM_NETWORK_COUNT.labels(healthy="true").set(sum(1 for n in evm_networks if n.is_healthy))
            EVM_NETWORK_COUNT.labels(healthy="false").set(sum(1 for n in evm_networks if not n.is_healthy))
            TOKEN_COUNT.set(await reader.count(TokenBase))
        except Exception as e:
            logger.error(f"Error updating metrics: {e}")

        await asyncio.sleep(15)


async def start_background_watch():
    """Start the block watcher."""
    try:
        await watcher.watch()
    except asyncio.CancelledError:
        logger.info("Block watcher cancelled")
    except Exception as e:
        logger.error(f"Block watcher error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global watch_task, metrics_task, watcher

    # Startup
    logger.info("Starting chaindata registry...")
    settings = get_settings()

    logger.info(f"Chaindata feed: {settings.chaindata_base_url}")
    logger.info(f"Relay chain: {settings.relay_rpc_url}")
    logger.info(f"Running every {settings.num_blocks_per_execution} blocks")

    # Initialize database
    await db.connect()
    await reader.connect()
    logger.info("Database connected (WAL mode enabled)")

    # Start background tasks
    watcher = BlockWatcher(create_context(settings, db), settings)
    watch_task = asyncio.create_task(start_background_watch())
    metrics_task = asyncio.create_task(update_metrics())
    logger.info("Background tasks started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    watcher.stop()

    for task in (watch_task, metrics_task):
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    await reader.close()
    await db.close()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Chaindata Registry",
    description="Health-annotated registry of chains, evm networks and tokens",
    version="1.0.0",
    lifespan=lifespan
)

# Add Gzip compression middleware (min 1KB to compress)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Middleware to track request metrics."""
    start_time = time.time()
    response = await call_next(request)

    # Record metrics (skip /metrics endpoint to avoid recursion)
    if request.url.path != "/metrics":
        latency = time.time() - start_time
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).inc()
        REQUEST_LATENCY.labels(endpoint=request.url.path).observe(latency)

    return response


async def cached(cache_key: str, load):
    if cache_key in response_cache:
        return response_cache[cache_key]
    try:
        response = await load()
    except Exception as e:
        logger.error(f"Error loading {cache_key}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to load {cache_key}")
    response_cache[cache_key] = response
    return response


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint for Kubernetes probes.

    Returns entity counts of the registry.
    """
    try:
        return HealthResponse(
            status="healthy",
            chain_count=await reader.count(Chain),
            evm_network_count=await reader.count(EvmNetwork),
            token_count=await reader.count(TokenBase),
        )
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Service unavailable")


@app.get("/chains", response_model=List[Chain])
async def get_chains():
    """All chains, in sort order. Cached for 30 seconds."""
    chains = await cached("chains", lambda: reader.find(Chain))
    return sorted(chains, key=lambda chain: (chain.sort_index is None, chain.sort_index or 0))


@app.get("/evm-networks", response_model=List[EvmNetwork])
async def get_evm_networks():
    """All evm networks, in sort order. Cached for 30 seconds."""
    networks = await cached("evm_networks", lambda: reader.find(EvmNetwork))
    return sorted(networks, key=lambda network: (network.sort_index is None, network.sort_index or 0))


@app.get("/tokens", response_model=List[Token])
async def get_tokens():
    """All tokens with their latest rates. Cached for 30 seconds."""
    return await cached("tokens", lambda: reader.find(TokenBase))


@app.get("/status", response_model=PipelineStatus)
async def get_status():
    """Outcome of the most recent pipeline run."""
    if watcher is None:
        return PipelineStatus()
    return watcher.status


@app.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format for scraping.
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
