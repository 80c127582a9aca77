"""WebSocket endpoint bridging sockets to the gateway."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ...app import Application
from ...errors import AuthenticationError, ValidationFailure
from ...gateway.protocol import InboundFrame
from ...logging_config import get_logger

logger = get_logger(__name__)


def _credential(websocket: WebSocket, token: str | None) -> str | None:
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


def create_websocket_router(app: Application) -> APIRouter:
    """Create websocket router."""
    router = APIRouter(tags=["websocket"])

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: str | None = None):
        gateway = app.gateway
        await websocket.accept()
        try:
            connection = await gateway.connect(websocket, _credential(websocket, token))
        except AuthenticationError as e:
            # Policy violation
            await websocket.close(code=1008, reason=e.message)
            return

        try:
            while connection.is_authenticated:
                raw = await websocket.receive_text()
                if not connection.is_authenticated:
                    # Closed by a reset while waiting
                    break
                try:
                    frame = InboundFrame.model_validate_json(raw)
                except ValidationError:
                    error = ValidationFailure("Malformed frame")
                    await connection.reply(
                        None,
                        {"success": False, "error": error.message, "code": error.code},
                    )
                    continue

                reply = await gateway.dispatch(connection, frame.event, frame.data)
                if reply is not None:
                    await connection.reply(frame.request_id, reply)
        except WebSocketDisconnect:
            pass
        finally:
            await gateway.disconnect(connection)

    return router
