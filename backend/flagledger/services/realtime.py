from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import contextlib
import json

from fastapi import WebSocket

from flagledger.services.events import EventChannel, Subscription

CONNECTED = ': connected\n\n'
HEARTBEAT = ': heartbeat\n\n'


def format_sse(event: dict) -> str:
    return f'data: {json.dumps(event)}\n\n'


async def trigger_stream(channel: EventChannel, topic: str, heartbeat: float = 30.0) -> AsyncIterator[str]:
    """Server-Sent Events body: one ``data:`` frame per change, comments while idle."""
    async with channel.subscribe(topic) as subscription:
        yield CONNECTED
        while True:
            event = await subscription.next_event(timeout=heartbeat)
            yield HEARTBEAT if event is None else format_sse(event)


async def _forward(websocket: WebSocket, subscription: Subscription, heartbeat: float) -> None:
    while True:
        event = await subscription.next_event(timeout=heartbeat)
        await websocket.send_json(event if event is not None else {'type': 'heartbeat'})


async def pump_websocket(websocket: WebSocket, channel: EventChannel, topic: str, heartbeat: float = 30.0) -> None:
    await websocket.accept()
    async with channel.subscribe(topic) as subscription:
        await websocket.send_json({'type': 'connected'})
        forward = asyncio.create_task(_forward(websocket, subscription, heartbeat))
        try:
            # Listen-only socket: inbound frames are ignored until the client leaves.
            while True:
                message = await websocket.receive()
                if message['type'] == 'websocket.disconnect':
                    break
        finally:
            forward.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forward
