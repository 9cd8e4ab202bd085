"""
Argus FastAPI application.

Main entry point for the monitor service. Wires together:
- Push event intake at POST /events (from the instrumentation hook)
- Snapshot WebSocket at /ws for dashboards
- Current state at GET /state and health check at GET /health
- Background loops for transcript discovery, stale reaping and keepalive pings
"""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from argus import __version__
from argus.config import Config, config
from argus.engine import Engine, run_periodically
from argus.errors import EventValidationError
from argus.events import parse_event
from argus.publisher import Subscription

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(cfg: Optional[Config] = None, engine: Optional[Engine] = None,
               background: bool = True) -> FastAPI:
    """
    Build the service.

    background=False skips the poll/reap/ping loops; tests drive the engine
    directly instead.
    """
    cfg = cfg or config
    engine = engine or Engine(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        logger.info("Starting Argus...")
        logger.info(f"Transcript roots: {', '.join(str(r) for r in cfg.TRANSCRIPT_ROOTS) or '(none)'}")
        tasks = []
        if background:
            # State is rebuilt from disk on boot by the first discovery tick.
            tasks = [
                asyncio.create_task(run_periodically("poll", cfg.POLL_INTERVAL, engine.poll)),
                asyncio.create_task(run_periodically("reap", cfg.REAP_INTERVAL, engine.reap)),
                asyncio.create_task(ping_loop(engine, cfg.PING_INTERVAL)),
            ]
        logger.info("Argus started successfully")

        yield

        logger.info("Shutting down Argus...")
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="Argus", version=__version__, lifespan=lifespan)
    app.state.engine = engine

    @app.post("/events")
    async def receive_event(request: Request):
        """Push event from the instrumentation hook."""
        try:
            body = await request.json()
        except ValueError as e:
            logger.warning(f"Invalid JSON in event: {e}")
            raise HTTPException(status_code=400, detail="Invalid JSON")

        try:
            event = parse_event(body)
        except EventValidationError as e:
            logger.warning(f"Rejected event: {e}")
            raise HTTPException(status_code=400, detail=str(e))

        await engine.ingest(event)
        return {"ok": True}

    @app.get("/state")
    async def get_state():
        return engine.snapshot().payload()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Snapshot stream for dashboards.

        The current state is sent on connect and after every change. Clients
        may send {"type": "ping"} and get {"type": "pong"} back.
        """
        await websocket.accept()
        subscription = engine.publisher.subscribe(str(uuid.uuid4()))
        sender = asyncio.create_task(pump_subscription(websocket, subscription))
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    data = json.loads(text)
                except ValueError:
                    logger.warning(f"Ignoring non-JSON message from {subscription.id}")
                    continue
                await handle_ws_message(subscription, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected: {subscription.id}")
        except Exception as e:
            logger.error(f"WebSocket error for {subscription.id}: {e}")
        finally:
            engine.publisher.unsubscribe(subscription.id)
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass

    @app.get("/health")
    async def health():
        """Health check with subscriber statistics."""
        return {
            "status": "ok",
            "uptime": round(engine.uptime(), 3),
            "projects": len(engine.snapshot().projects),
            **engine.publisher.get_stats(),
        }

    @app.get("/")
    async def root():
        """Root endpoint with basic service info."""
        return {
            "service": "Argus",
            "version": __version__,
            "endpoints": {
                "events": "/events",
                "state": "/state",
                "websocket": "/ws",
                "health": "/health",
            }
        }

    return app


async def ping_loop(engine: Engine, interval: float):
    """Background task to queue periodic pings for all subscribers."""
    while True:
        await asyncio.sleep(interval)
        if engine.publisher.subscriptions:
            logger.debug(f"Sending ping to {len(engine.publisher.subscriptions)} subscribers")
            engine.publisher.send_ping_all()


async def pump_subscription(websocket: WebSocket, subscription: Subscription):
    """Drain a subscriber's queue into its socket until the subscription closes."""
    try:
        while True:
            message = await subscription.next_message()
            if message is None:
                break
            await websocket.send_json(message)
    except Exception as e:
        logger.warning(f"Failed to send to {subscription.id}: {e}")
    finally:
        if subscription.closed:
            try:
                await websocket.close()
            except Exception:
                pass


async def handle_ws_message(subscription: Subscription, message):
    """Handle a message from a dashboard client."""
    msg_type = message.get("type") if isinstance(message, dict) else None

    if msg_type == "ping":
        subscription.offer({"type": "pong", "payload": None})
    elif msg_type == "pong":
        # Keepalive response, nothing to do
        pass
    else:
        logger.warning(f"Unknown message type from {subscription.id}: {msg_type}")


app = create_app()
