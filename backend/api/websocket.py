"""WebSocket handler for real-time workflow event streaming.

This module streams workflow events to the dashboard and receives control
commands (pause, resume, cancel, ping) from clients.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, get_event_bus

if TYPE_CHECKING:
    from workflow_engine import WorkflowEngine

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_workflow_engine: "WorkflowEngine | None" = None

# Events after which a workflow publishes nothing more
_FINAL_EVENT_TYPES = frozenset(
    {
        EventType.WORKFLOW_COMPLETED,
        EventType.WORKFLOW_FAILED,
        EventType.WORKFLOW_CANCELLED,
    }
)


def set_workflow_engine(engine: "WorkflowEngine") -> None:
    """Set the workflow engine used by WebSocket command handlers."""
    global _workflow_engine
    _workflow_engine = engine
    logger.info("websocket_workflow_engine_configured")


def get_workflow_engine() -> "WorkflowEngine":
    """Return configured workflow engine for WebSocket command handlers."""
    if _workflow_engine is None:
        raise RuntimeError(
            "WorkflowEngine not configured for WebSocket handlers. "
            "Call set_workflow_engine() during startup."
        )
    return _workflow_engine


@websocket_router.websocket("/ws/{workflow_id}")
async def websocket_endpoint(websocket: WebSocket, workflow_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: Wire messages ``{"type": ..., "payload": {...}}``
    - Client -> Server: Commands ``workflow:pause``, ``workflow:resume``,
      ``workflow:cancel`` and ``ping``

    The connection ends once the workflow's stream is closed. A client that
    connects after the workflow finished receives the replayed history and
    is then disconnected.

    Args:
        websocket: The WebSocket connection.
        workflow_id: The workflow to stream events for.
    """
    await websocket.accept()

    logger.info("websocket_connected", workflow_id=workflow_id)

    event_bus = get_event_bus()

    # Subscribe FIRST to start capturing live events, then replay history.
    # Events landing in both are skipped by sequence number below.
    queue = event_bus.subscribe(workflow_id)

    try:
        last_replayed_sequence = 0
        finished = False
        history = event_bus.get_event_history(workflow_id)
        if history:
            logger.info(
                "replaying_event_history",
                workflow_id=workflow_id,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.to_message())
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", workflow_id=workflow_id)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", workflow_id=workflow_id, error=str(e))
                    return
                last_replayed_sequence = event.sequence
                finished = event.type in _FINAL_EVENT_TYPES

        if finished:
            logger.info("websocket_replay_of_finished_workflow", workflow_id=workflow_id)
            with contextlib.suppress(Exception):
                await websocket.close()
            return

        async def send_events() -> None:
            """Forward events from the event bus to the WebSocket client."""
            try:
                while True:
                    event = await queue.get()
                    # WORKFLOW_CLOSED is a sentinel from close_workflow; stop sending.
                    if event.type == EventType.WORKFLOW_CLOSED:
                        logger.info("workflow_closed_sentinel", workflow_id=workflow_id)
                        break

                    if event.sequence <= last_replayed_sequence:
                        logger.debug(
                            "event_skipped_duplicate",
                            workflow_id=workflow_id,
                            event_type=event.type.value,
                            sequence=event.sequence,
                        )
                        continue

                    await websocket.send_json(event.to_message())
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", workflow_id=workflow_id)
            except Exception as e:
                logger.error("websocket_send_error", workflow_id=workflow_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", workflow_id=workflow_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        workflow_id=workflow_id,
                        command_type=command_type,
                    )

                    if command_type == "ping":
                        await websocket.send_json({"type": "pong"})
                    elif command_type in _COMMAND_ACTIONS:
                        await handle_control_command(websocket, workflow_id, data)
                    else:
                        logger.warning(
                            "unknown_command",
                            workflow_id=workflow_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", workflow_id=workflow_id)
            except Exception as e:
                logger.error("websocket_receive_error", workflow_id=workflow_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Wait for either task to complete (stream closed or client gone)
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if send_task in done:
            with contextlib.suppress(Exception):
                await websocket.close()

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", workflow_id=workflow_id)
    except Exception as e:
        logger.error("websocket_error", workflow_id=workflow_id, error=str(e))
    finally:
        event_bus.unsubscribe(workflow_id, queue)
        logger.info("websocket_cleanup_complete", workflow_id=workflow_id)


# A socket follows only the workflow in its URL; starting a workflow is HTTP-only
_COMMAND_ACTIONS = {
    "workflow:pause": "pause",
    "workflow:resume": "resume",
    "workflow:cancel": "cancel",
}


async def handle_control_command(
    websocket: WebSocket,
    workflow_id: str,
    data: dict[str, Any],
) -> None:
    """Apply a pause/resume/cancel command from a WebSocket client.

    Commands carry the target in ``payload.workflowId``; without one the
    connection's own workflow is used. The outcome is acknowledged to the
    sender only; state changes reach every client through the event stream.

    Args:
        websocket: Connection the command arrived on.
        workflow_id: Workflow the connection is streaming.
        data: The decoded command message.
    """
    action = _COMMAND_ACTIONS[data["type"]]
    payload = data.get("payload")
    target = workflow_id
    if isinstance(payload, dict) and isinstance(payload.get("workflowId"), str):
        target = payload["workflowId"]

    logger.info("control_command_processing", workflow_id=target, action=action)

    engine = get_workflow_engine()
    handler = {"pause": engine.pause, "resume": engine.resume, "cancel": engine.cancel}[action]

    try:
        accepted = await handler(target)
    except Exception as e:
        logger.error("control_command_failed", workflow_id=target, action=action, error=str(e))
        accepted = False

    await websocket.send_json(
        {
            "type": "command:ack",
            "payload": {"workflowId": target, "action": action, "accepted": accepted},
        }
    )
