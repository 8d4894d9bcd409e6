"""
Signaling websocket for the Duo Relay API.

One persistent connection per client session. Frames are decoded here and
handed to the SignalingRouter one at a time, so events on a single
connection run to completion in the order they arrive.
"""

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from loguru import logger

from duo_relay.core import protocol
from duo_relay.core.connections import Connection
from duo_relay.core.errors import InvalidArgument
from duo_relay.core.router import SignalingRouter
from duo_relay.api.routes.dependencies import get_router


router = APIRouter()


@router.websocket("/ws")
async def signaling_socket(websocket: WebSocket, relay: SignalingRouter = Depends(get_router)):
    await websocket.accept()
    connection = Connection(websocket)
    relay.connect(connection)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                event, data = protocol.parse_frame(raw)
            except InvalidArgument as e:
                await connection.send(
                    protocol.PROTOCOL_ERROR, {"error": e.message, "reason": e.reason}
                )
                continue
            await relay.handle_event(connection, event, data)
    except WebSocketDisconnect as e:
        logger.debug(f"{connection.id} closed by client (code {e.code})")
    except Exception:
        logger.exception(f"Unexpected failure on {connection.id}; closing connection")
        await connection.close(code=status.WS_1011_INTERNAL_ERROR)
    finally:
        await relay.disconnect(connection)
