import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from functools import partial
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.requests import HTTPConnection
from web3 import Web3

# --- Imports ---
from src.api.settings import Settings, get_settings
from src.core.entities.trade import Trade, TradeSource
from src.core.exceptions import BackfillQueryFailure, SubscriberRejected
from src.core.interfaces.datasource import IEventSource, ILogArchive, ISnapshotStore
from src.core.services import TradeFeedService
from src.core.use_cases.backfill import Backfill
from src.core.use_cases.broadcaster import Broadcaster, SubscriberChannel, SubscriberRegistry
from src.core.use_cases.event_decoder import decode_curve_event, decode_swap, map_external_transaction
from src.core.use_cases.trade_history import TradeHistory
from src.core.use_cases.upstream_subscription import UpstreamSubscription

# Setup Logging
logging.basicConfig(level=get_settings().LOG_LEVEL)
logger = logging.getLogger("SwapFeed")


# --- Wiring ---

def build_snapshot_store(settings: Settings) -> Optional[ISnapshotStore]:
    if settings.REDIS_URL:
        from src.infrastructure.cache.redis_service import RedisSnapshotStore
        return RedisSnapshotStore(settings.REDIS_URL)
    if settings.SNAPSHOT_PATH:
        from src.infrastructure.persistence.json_snapshot import JsonFileSnapshotStore
        return JsonFileSnapshotStore(settings.SNAPSHOT_PATH)
    return None


def build_feed(settings: Settings) -> TradeFeedService:
    """
    Assembles the feed with one UpstreamSubscription per configured source.
    """
    pair_source: Optional[IEventSource]
    archive: ILogArchive
    if settings.USE_MOCK_SOURCE:
        from src.infrastructure.gateways.local_mock import LocalMockEventSource
        mock = LocalMockEventSource()
        pair_source, archive = mock, mock
        logger.info("Using local mock event source")
    else:
        from src.infrastructure.gateways.bsc_chain import BscLogArchive, BscSwapSource
        pair_source = BscSwapSource(settings.RPC_WS_URL, settings.PAIR_ADDRESS) if settings.RPC_WS_URL else None
        archive = BscLogArchive(settings.RPC_HTTP_URL, settings.PAIR_ADDRESS)

    decode_pair = partial(
        decode_swap,
        source=TradeSource.PAIR,
        token_decimals=settings.TOKEN_DECIMALS,
        base_decimals=settings.BASE_DECIMALS,
        asset_ticker=settings.TOKEN_TICKER,
        asset_image=settings.TOKEN_IMAGE,
    )

    history = TradeHistory(settings.HISTORY_CAPACITY)
    feed = TradeFeedService(
        history=history,
        broadcaster=Broadcaster(
            SubscriberRegistry(min_interval=settings.ATTACH_DEBOUNCE_SECONDS),
            queue_size=settings.SUBSCRIBER_QUEUE_SIZE,
        ),
        snapshot_store=build_snapshot_store(settings),
        backfill=Backfill(archive, history, decode=decode_pair, lookback_blocks=settings.LOOKBACK_BLOCKS),
    )

    if pair_source is not None:
        feed.add_subscription(UpstreamSubscription(
            "pair-swaps",
            pair_source,
            feed.handler_for(decode_pair, TradeSource.PAIR),
            reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
        ))
    else:
        logger.warning("RPC_WS_URL not set. Live Swap subscription disabled.")

    if settings.EXTERNAL_STREAM_URL:
        from src.infrastructure.gateways.external_stream import ExternalTransactionSource
        feed.add_subscription(UpstreamSubscription(
            "external-transactions",
            ExternalTransactionSource(settings.EXTERNAL_STREAM_URL),
            feed.handler_for(map_external_transaction, TradeSource.EXTERNAL),
            reconnect_delay=settings.RECONNECT_DELAY_SECONDS,
        ))
    return feed


def build_curve_archive(settings: Settings) -> ILogArchive:
    if settings.USE_MOCK_SOURCE:
        from src.infrastructure.gateways.local_mock import LocalMockEventSource
        return LocalMockEventSource()
    from src.infrastructure.gateways.bsc_chain import BscLogArchive
    return BscLogArchive(settings.CURVE_RPC_URL)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    feed = build_feed(settings)
    app.state.feed = feed
    app.state.curve_archive = build_curve_archive(settings)

    feed.restore()
    await feed.ensure_backfilled()

    tasks = [asyncio.create_task(sub.run(), name=sub.name) for sub in feed.subscriptions]
    logger.info(f"Started {len(tasks)} upstream subscriptions")
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(title="SwapFeed API", version="1.0.0", description="Live DEX swap feed with history snapshots", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# --- Dependency Injection ---

def get_feed(connection: HTTPConnection) -> TradeFeedService:
    feed = getattr(connection.app.state, "feed", None)
    if feed is None:
        raise HTTPException(status_code=503, detail="Trade feed not initialised")
    return feed


def get_curve_archive(connection: HTTPConnection) -> ILogArchive:
    archive = getattr(connection.app.state, "curve_archive", None)
    if archive is None:
        raise HTTPException(status_code=503, detail="Curve archive not configured")
    return archive


def client_origin(connection: HTTPConnection, trust_forwarded: bool = False) -> str:
    """
    Debounce key for a subscriber. X-Forwarded-For is client-controlled, so
    it only counts when a trusted proxy sits in front.
    """
    forwarded = connection.headers.get("x-forwarded-for") if trust_forwarded else None
    if forwarded:
        return forwarded.split(",")[0].strip()
    return connection.client.host if connection.client else "unknown"


# --- Endpoints ---

@app.get("/ping", response_class=PlainTextResponse)
async def ping():
    return "pong"


@app.get("/health")
async def health(feed: TradeFeedService = Depends(get_feed)):
    return {
        "status": "healthy",
        "trades": len(feed.history),
        "subscribers": len(feed.broadcaster),
        "upstreams": {sub.name: sub.state.value for sub in feed.subscriptions},
    }


@app.get("/transactions", response_model=List[Trade])
async def get_transactions(feed: TradeFeedService = Depends(get_feed)):
    """
    External-stream trades currently held in history, most recent first.
    """
    return [t for t in feed.snapshot() if t.source == TradeSource.EXTERNAL]


@app.get("/v1/trades", response_model=List[Trade])
async def get_trades(feed: TradeFeedService = Depends(get_feed)):
    return list(feed.snapshot())


@app.get("/v1/trades/{curve_address}", response_model=List[Trade])
async def get_curve_trades(
    curve_address: str,
    archive: ILogArchive = Depends(get_curve_archive),
    settings: Settings = Depends(get_settings),
):
    """
    Bought/Sold trades of one bonding curve over the lookback window.
    Stateless: nothing here touches the live history.
    """
    if not Web3.is_address(curve_address):
        raise HTTPException(status_code=400, detail="Invalid curve address")

    try:
        current_block = await archive.get_block_number()
        events = await archive.get_curve_logs(
            curve_address, max(current_block - settings.LOOKBACK_BLOCKS, 0), current_block
        )
    except BackfillQueryFailure as e:
        logger.error(f"Error fetching trades for {curve_address}: {e}")
        raise HTTPException(status_code=502, detail="Failed to fetch trades")

    events = sorted(events, key=lambda e: (e.block_number, e.transaction_index, e.log_index), reverse=True)
    trades = []
    for event in events:
        result = decode_curve_event(event)
        if isinstance(result, Trade):
            trades.append(result)
        else:
            logger.warning(f"Skipping curve event {result.tx_hash}: {result.reason}")
    return trades


# --- Real-time stream ---

async def _watch_disconnect(websocket: WebSocket, feed: TradeFeedService, channel: SubscriberChannel) -> None:
    # Clients never send anything we act on; this only notices the hang-up
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except Exception as e:
        logger.debug(f"Subscriber {channel.id} read loop ended: {e}")
    finally:
        feed.detach(channel)


@app.websocket("/ws/trades")
async def ws_trades(
    websocket: WebSocket,
    feed: TradeFeedService = Depends(get_feed),
    settings: Settings = Depends(get_settings),
):
    """
    Sends one `trades:history` snapshot, then one `trades:new` frame per trade.
    """
    origin = client_origin(websocket, settings.TRUST_FORWARDED_FOR)

    try:
        channel = await feed.subscribe(origin)
    except SubscriberRejected as e:
        logger.info(str(e))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Reconnecting too fast")
        return

    await websocket.accept()
    watcher = asyncio.create_task(_watch_disconnect(websocket, feed, channel))
    try:
        while True:
            message = await channel.receive()
            if message is None:
                break
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"Delivery to subscriber {channel.id} failed: {e}")
    finally:
        feed.detach(channel)
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
        if channel.close_reason == "slow consumer":
            with suppress(Exception):
                await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
