"""Forward bus events to a WebSocket observer.

Protocol (client → server, optional):
    {"action": "subscribe", "feature_ids": ["feature-a"]}
    {"action": "resync"}
    {"action": "ping"}

Protocol (server → client):
    {"kind": "state-changed", "feature_id": "...", "payload": {...}, "seq": 12, ...}
    {"kind": "system", "type": "connected" | "subscribed" | "pong", "payload": {...}}
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from ..domain.models import EventKind
from .bus import EventBus, Subscription


def _system(message_type: str, payload: dict[str, Any]) -> str:
    return json.dumps({"kind": "system", "type": message_type, "payload": payload})


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    async for event in subscription:
        await websocket.send_text(json.dumps(event.to_dict(), default=str))


async def _read_commands(websocket: WebSocket, bus: EventBus, subscription: Subscription) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            continue
        action = message.get("action") if isinstance(message, dict) else None
        if action == "subscribe":
            ids = [str(fid) for fid in message.get("feature_ids") or [] if str(fid).strip()]
            subscription.feature_ids = set(ids) if ids else None
            await websocket.send_text(_system("subscribed", {"feature_ids": sorted(ids)}))
        elif action == "resync":
            await websocket.send_text(
                json.dumps({"kind": EventKind.RESYNC.value, "feature_id": "*", "payload": {"features": bus.snapshot()}})
            )
        elif action == "ping":
            await websocket.send_text(_system("pong", {}))


async def stream_events(websocket: WebSocket, bus: EventBus, feature_ids: Optional[list[str]] = None) -> None:
    """Serve one observer connection until it disconnects."""
    await websocket.accept()
    subscription = bus.subscribe(feature_ids=feature_ids or None)
    logger.debug("Observer connected (subscribers={})", bus.subscriber_count)
    pump = asyncio.create_task(_pump(websocket, subscription))
    reader = asyncio.create_task(_read_commands(websocket, bus, subscription))
    try:
        await websocket.send_text(_system("connected", {"feature_ids": sorted(feature_ids or [])}))
        done, _ = await asyncio.wait({pump, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Observer connection ended with error: {}", exc)
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(subscription)
        for task in (pump, reader):
            task.cancel()
        await asyncio.gather(pump, reader, return_exceptions=True)
        logger.debug("Observer disconnected (subscribers={})", bus.subscriber_count)
