# src/main.py
import asyncio
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, status
from pydantic import Field, TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketDisconnect

from backtest_runner import find_optimal_settings
from config import get_config
from engine import EngineStartError
from exchange_client import (
    SUPPORTED_GRANULARITIES,
    CandleFetchError,
    CoinbaseClient,
    recommended_granularity,
)
from logging_setup import setup_logging
from models import (
    CandleOut,
    ConnectionTestResult,
    ControlMessage,
    GetStateRequest,
    HealthResponse,
    OptimizationResult,
    OptimizeRequest,
    StartRequest,
    StateSnapshot,
    StopRequest,
    TelegramTestRequest,
    UpdateSettingsRequest,
)
from notifier import TelegramNotifier
from session import ObserverLimitReached, QueueObserver, SessionController
from side_effects import SideEffectWorker

logger = logging.getLogger(__name__)

app = FastAPI(title="Crossbot Trading Service")

_control_adapter = TypeAdapter(Annotated[ControlMessage, Field(discriminator="type")])


@app.on_event("startup")
async def startup_event():
    config = get_config()
    setup_logging(config.log_level)

    exchange = CoinbaseClient(
        api_url=config.coinbase_api_url,
        exchange_url=config.coinbase_exchange_url,
        api_key=config.coinbase_api_key,
        api_secret=config.coinbase_api_secret,
        passphrase=config.coinbase_passphrase,
        timeout_s=config.http_timeout_s,
        chunk_limit=config.candle_chunk_limit,
        max_retries=config.candle_max_retries,
        retry_delay_s=config.candle_retry_delay_s,
        page_delay_s=config.candle_page_delay_s,
    )
    notifier = TelegramNotifier(api_url=config.telegram_api_url, timeout_s=config.http_timeout_s)
    worker = SideEffectWorker(notifier=notifier, exchange=exchange)

    app.state.config = config
    app.state.exchange = exchange
    app.state.notifier = notifier
    app.state.session = SessionController(
        exchange=exchange,
        worker=worker,
        max_observers=config.max_observers,
        history_limit=config.chart_history_limit,
        default_live_interval_ms=config.default_live_interval_ms,
    )
    logger.info("Trading service ready")


@app.on_event("shutdown")
async def shutdown_event():
    await app.state.session.close()
    await app.state.exchange.aclose()
    await app.state.notifier.aclose()


async def _start_session(session: SessionController, request: StartRequest) -> bool:
    replay = None
    if request.replay_data is not None:
        replay = [p.to_point() for p in request.replay_data]
    return await session.start(
        request.settings,
        replay_data=replay,
        is_live=request.is_live,
        simulate=request.simulate,
    )


def _error_message(text: str) -> Dict[str, Any]:
    return {"type": "error", "message": text}


# --- 1) WS /ws control channel ---

async def _pump_updates(websocket: WebSocket, observer: QueueObserver):
    """Forward queued state messages to the client until the observer is closed."""
    while True:
        message = await observer.get()
        if message is None:
            # Pruned as a slow consumer, or the session is shutting down.
            await websocket.close(code=status.WS_1001_GOING_AWAY)
            return
        await websocket.send_json(message)


async def _cancel_and_collect(task: asyncio.Task):
    """Cancel ``task`` and retrieve its outcome so a failed send is never left unobserved."""
    task.cancel()
    for outcome in await asyncio.gather(task, return_exceptions=True):
        if isinstance(outcome, Exception):
            logger.debug("Update sender ended with %r", outcome)


async def _handle_control(websocket: WebSocket, session: SessionController, raw: str):
    try:
        message = _control_adapter.validate_json(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        await websocket.send_json(_error_message(f"Invalid message: {first['msg']}"))
        return

    try:
        if isinstance(message, StartRequest):
            if not await _start_session(session, message):
                logger.info("Ignoring start: a session is already running")
        elif isinstance(message, StopRequest):
            session.stop()
        elif isinstance(message, UpdateSettingsRequest):
            if not session.update_settings(message.settings):
                logger.info("Ignoring settings update: no running session")
        elif isinstance(message, GetStateRequest):
            await websocket.send_json(session.state_message())
    except EngineStartError as exc:
        await websocket.send_json(_error_message(f"Could not start: {exc}"))
    except ValidationError as exc:
        await websocket.send_json(_error_message(f"Invalid settings: {exc.errors()[0]['msg']}"))


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    session: SessionController = app.state.session
    observer = QueueObserver(maxsize=app.state.config.observer_queue_size)
    try:
        session.subscribe(observer)
    except ObserverLimitReached as exc:
        await websocket.send_json(_error_message(str(exc)))
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    # Initial snapshot so clients render something on connect
    await websocket.send_json(session.state_message())
    sender = asyncio.create_task(_pump_updates(websocket, observer))
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", status.WS_1000_NORMAL_CLOSURE))
            raw = frame.get("text")
            if raw is None:
                await websocket.send_json(_error_message("Invalid message: text frames only"))
                continue
            await _handle_control(websocket, session, raw)
    except WebSocketDisconnect:
        logger.info("Client disconnected from /ws")
    finally:
        session.unsubscribe(observer)
        observer.close()
        await _cancel_and_collect(sender)


# --- 2) REST endpoints ---

@app.get("/api/health", response_model=HealthResponse, tags=["Service"])
async def health():
    return HealthResponse(is_running=app.state.session.is_running)


@app.get("/api/state", response_model=StateSnapshot, tags=["Session"])
async def get_state():
    return app.state.session.get_snapshot()


@app.post("/api/start", response_model=StateSnapshot, tags=["Session"])
async def start_session(request: StartRequest):
    session: SessionController = app.state.session
    try:
        started = await _start_session(session, request)
    except EngineStartError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if not started:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A session is already running.")
    return session.get_snapshot()


@app.post("/api/stop", response_model=StateSnapshot, tags=["Session"])
async def stop_session():
    session: SessionController = app.state.session
    session.stop()
    return session.get_snapshot()


@app.post("/api/settings", response_model=StateSnapshot, tags=["Session"])
async def update_settings(partial: Dict[str, Any]):
    session: SessionController = app.state.session
    try:
        applied = session.update_settings(partial)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if not applied:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No running session.")
    return session.get_snapshot()


@app.get("/api/candles/{pair}", response_model=List[CandleOut], tags=["Market data"])
async def get_candles(pair: str, start: datetime, end: datetime, granularity: Optional[int] = None):
    if granularity is None:
        granularity = recommended_granularity(start, end)
    if granularity not in SUPPORTED_GRANULARITIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported granularity {granularity}; use one of {list(SUPPORTED_GRANULARITIES)}.",
        )
    try:
        candles = await app.state.exchange.get_candles(pair.upper(), start, end, granularity)
    except CandleFetchError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return [asdict(c) for c in candles]


@app.post("/api/optimize", response_model=OptimizationResult, tags=["Backtest"])
async def optimize(request: OptimizeRequest):
    points = [p.to_point() for p in request.replay_data]
    try:
        # CPU-bound grid search; keep it off the event loop
        return await run_in_threadpool(find_optimal_settings, request.settings, points)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@app.post("/api/telegram/test", response_model=ConnectionTestResult, tags=["Notifications"])
async def telegram_test(request: TelegramTestRequest):
    return await app.state.notifier.test_connection(request.bot_token, request.chat_id)


def run():
    import uvicorn

    config = get_config()
    uvicorn.run("main:app", host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    run()
