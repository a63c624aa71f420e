"""REST API routes for the bulb harness."""

import asyncio
import logging
from typing import Literal

from fastapi import APIRouter, HTTPException

from config import REQUEST_TIMEOUT
from discovery.service import DiscoveryError
from protocol.codec import (
    DecodeFailure,
    make_get_pilot,
    make_get_system_config,
    make_get_user_config,
)
from protocol.models import Envelope
from transport.channel import BulbChannel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_registry = None
_on_discover = None


def init_routes(discovery_service, registry, on_discover) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _registry, _on_discover
    _discovery_service = discovery_service
    _registry = registry
    _on_discover = on_discover


# --- Bulbs ---

@router.get("/bulbs")
async def list_bulbs():
    """Return every bulb that has answered discovery."""
    return {"bulbs": [b.model_dump() for b in _registry.all()]}


async def _query(mac: str, envelope: Envelope) -> dict:
    """Run one request/reply exchange with a known bulb."""
    handle = _registry.handle_for(mac)
    if handle is None:
        raise HTTPException(status_code=404, detail="Bulb not found")

    try:
        async with BulbChannel() as channel:
            await channel.connect(handle)
            reply = await channel.request(envelope, timeout=REQUEST_TIMEOUT)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail=f"No reply from {handle.ip}")
    except OSError as e:
        logger.warning(f"Request to {handle.mac} failed: {e}")
        raise HTTPException(status_code=502, detail=f"Socket error: {e}")

    if isinstance(reply, DecodeFailure):
        raise HTTPException(status_code=502, detail=f"Unparseable reply: {reply.reason}")
    if reply.error is not None:
        raise HTTPException(status_code=502, detail=reply.error.model_dump(exclude_none=True))

    result = reply.result.model_dump(by_alias=True, exclude_none=True) if reply.result else {}
    return {"mac": handle.mac, "ip": str(handle.ip), "result": result}


@router.get("/bulbs/{mac}/pilot")
async def get_pilot(mac: str):
    """Ask a bulb for its current pilot state."""
    return await _query(mac, make_get_pilot())


@router.get("/bulbs/{mac}/config/{kind}")
async def get_config(mac: str, kind: Literal["user", "system"]):
    """Ask a bulb for its user or system configuration."""
    envelope = make_get_user_config() if kind == "user" else make_get_system_config()
    return await _query(mac, envelope)


# --- Discovery ---

@router.get("/discovery")
async def discovery_status():
    return {"running": _discovery_service.running, "bulbs": len(_registry)}


@router.post("/discovery/start")
async def start_discovery():
    try:
        await _discovery_service.start(_on_discover)
    except DiscoveryError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "running"}


@router.post("/discovery/stop")
async def stop_discovery():
    _discovery_service.stop()
    return {"status": "stopped"}
