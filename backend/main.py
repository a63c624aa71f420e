"""
WiZ Link: FastAPI application entry point.

Starts the Discovery Service on startup, records every bulb that answers,
serves the REST API and pushes discovery events over a WebSocket.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from api.registry import BulbRegistry
from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, HOME_ID, HOST_IP, HOST_MAC
from discovery.models import PeerHandle
from discovery.service import DiscoveryError, DiscoveryService

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
discovery_service = DiscoveryService(HOME_ID, HOST_IP, HOST_MAC)
registry = BulbRegistry()
ws_manager = ConnectionManager()


async def on_bulb_discovered(handle: PeerHandle) -> None:
    """Record the bulb and tell WebSocket clients the first time it shows up."""
    if registry.observe(handle):
        await ws_manager.broadcast("bulb_discovered", registry.get(handle.mac).model_dump())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop discovery."""
    logger.info("Starting WiZ Link services...")
    try:
        await discovery_service.start(on_bulb_discovered)
        logger.info(f"WiZ Link ready. API: {API_HOST}:{API_PORT}, home {HOME_ID}, host {HOST_IP}")
    except DiscoveryError as e:
        # Directed requests to known bulbs still work without discovery
        logger.error(f"Discovery unavailable: {e}. API only mode.")

    try:
        yield
    finally:
        logger.info("Shutting down WiZ Link services...")
        discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="WiZ Link",
    version="1.0.0",
    lifespan=lifespan,
)

# Inject services into routes
init_routes(discovery_service, registry, on_bulb_discovered)
app.include_router(router)


@app.websocket("/ws")
async def bulb_events(websocket: WebSocket):
    """Push bulb_discovered events. Anything the client sends is ignored."""
    await ws_manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
