"""WebSocket handler for real-time run event streaming.

A client connecting to ``/ws/runs/{run_id}`` first receives every stored
event of the run in seq order, then live events as they are recorded, until
the run finishes. Clients may send ``{"type": "ping"}`` to keep the
connection alive.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.routes import get_run_services
from events import get_event_bus
from models.schemas import ACTIVE_RUN_STATUSES

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

REPLAY_PAGE_SIZE = 500


@websocket_router.websocket("/ws/runs/{run_id}")
async def run_events_websocket(websocket: WebSocket, run_id: str) -> None:
    """Stream a run's events: durable replay first, then live.

    Args:
        websocket: The WebSocket connection.
        run_id: The run to stream.
    """
    await websocket.accept()
    services = get_run_services()

    run = await services.tree_store.get_run(run_id)
    if run is None:
        await websocket.send_json({"type": "error", "detail": f"Run {run_id} not found"})
        await websocket.close(code=4404)
        return

    logger.info("websocket_connected", run_id=run_id)
    event_bus = get_event_bus()

    # Subscribe before replaying so events recorded during the replay are
    # buffered; duplicates are dropped by seq below.
    queue = event_bus.subscribe(run_id)

    try:
        last_seq = 0
        while True:
            page = await services.tree_store.list_events(
                run_id, since_seq=last_seq, limit=REPLAY_PAGE_SIZE
            )
            for record in page:
                await websocket.send_json(record)
                last_seq = record["seq"]
            if len(page) < REPLAY_PAGE_SIZE:
                break
        logger.info("event_replay_complete", run_id=run_id, last_seq=last_seq)

        run = await services.tree_store.get_run(run_id)
        if run is None or run.status not in ACTIVE_RUN_STATUSES:
            await websocket.send_json({"type": "run_closed", "run_id": run_id})
            return

        async def send_events() -> None:
            """Forward live events newer than the replay."""
            try:
                while True:
                    event = await queue.get()
                    # None is the close_run sentinel.
                    if event is None:
                        await websocket.send_json({"type": "run_closed", "run_id": run_id})
                        break
                    if event.seq <= last_seq:
                        continue
                    await websocket.send_json(event.to_record())
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", run_id=run_id)
            except Exception as e:
                logger.error("websocket_send_error", run_id=run_id, error=str(e))

        async def receive_commands() -> None:
            try:
                while True:
                    data = await websocket.receive_json()
                    if isinstance(data, dict) and data.get("type") == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning("unknown_command", run_id=run_id)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", run_id=run_id)
            except Exception as e:
                logger.error("websocket_receive_error", run_id=run_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", run_id=run_id)
    except Exception as e:
        logger.error("websocket_error", run_id=run_id, error=str(e))
    finally:
        event_bus.unsubscribe(run_id, queue)
        logger.info("websocket_cleanup_complete", run_id=run_id)
