"""
WebSocket feed of seat-map changes for one train on one travel date.

Messages are the seat_update dicts published by the seat lock and booking
services, e.g.
  {"type": "seat_update", "seat_id": 12, "status": "locked", ...}
Clients apply them on top of the seat map they fetched over HTTP.
"""

import asyncio
from datetime import date

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.services.change_feed import change_feed, seat_channel
from app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/ws", tags=["Live updates"])


async def _until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        return


@router.websocket("/seats/{train_id}/{travel_date}")
async def seat_feed(websocket: WebSocket, train_id: int, travel_date: date):
    await websocket.accept()
    channel = seat_channel(train_id, travel_date)

    async with change_feed.subscribe(channel) as queue:
        await websocket.send_json(
            {"type": "connected", "train_id": train_id, "travel_date": travel_date.isoformat()}
        )
        logger.info("seat_feed_connected", channel=channel)

        receiver = asyncio.create_task(_until_disconnect(websocket))
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                await websocket.send_json(getter.result())
        except WebSocketDisconnect:
            pass
        finally:
            receiver.cancel()
            logger.info("seat_feed_disconnected", channel=channel)
