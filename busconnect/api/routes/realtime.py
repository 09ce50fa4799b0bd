import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from busconnect.api.dependencies import get_change_feed
from busconnect.domain.exceptions import TripNotFound
from busconnect.infrastructure.realtime.change_feed import SeatChangeFeed


router = APIRouter()
logger = logging.getLogger(__name__)

TRIP_NOT_FOUND_CLOSE_CODE = 4404


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/trips/{trip_id}/seats/live")
async def trip_seats_live(
    websocket: WebSocket,
    trip_id: str,
    feed: SeatChangeFeed = Depends(get_change_feed),
):
    """
    Sends the current seat snapshot on connect, then one snapshot per
    committed change. Clients that reconnect simply get a fresh snapshot.
    """

    await websocket.accept()

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def deliver(message: dict) -> None:
        # Called from whichever worker thread committed the change.
        loop.call_soon_threadsafe(queue.put_nowait, message)

    # Subscribe before reading the snapshot so no commit falls in between.
    subscription_id = feed.subscribe(trip_id, deliver)
    disconnect_waiter = None

    try:
        try:
            snapshot = await run_in_threadpool(feed.current_snapshot, trip_id)
        except TripNotFound:
            await websocket.close(code=TRIP_NOT_FOUND_CLOSE_CODE)
            return

        await websocket.send_json(snapshot.as_dict())
        disconnect_waiter = asyncio.ensure_future(_wait_for_disconnect(websocket))

        while True:
            next_message = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {next_message, disconnect_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if disconnect_waiter in done:
                next_message.cancel()
                break
            await websocket.send_json(next_message.result())
    except WebSocketDisconnect:
        logger.debug("Seat feed client for trip %s disconnected", trip_id)
    finally:
        feed.unsubscribe(subscription_id)
        if disconnect_waiter is not None and not disconnect_waiter.done():
            disconnect_waiter.cancel()
