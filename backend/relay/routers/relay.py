import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from relay.errors import RelayConnectionError
from relay.services.relay import RelaySession

logger = logging.getLogger(__name__)

router = APIRouter()


class WebSocketConnection:
    """adapts a starlette websocket to the relay's Connection protocol"""

    def __init__(self, ws: WebSocket):
        self.ws = ws

    async def receive_text(self) -> str | None:
        # binary frames are not part of the protocol and are skipped
        while True:
            message = await self.ws.receive()
            if message["type"] == "websocket.disconnect":
                return None
            text = message.get("text")
            if text is not None:
                return text

    async def send_text(self, text: str) -> None:
        if self.ws.application_state is not WebSocketState.CONNECTED:
            raise RelayConnectionError("websocket is not connected")
        try:
            await self.ws.send_text(text)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise RelayConnectionError(f"send failed: {e}") from e


@router.websocket("/ws")
async def relay_ws(ws: WebSocket):
    """send: raw text. recv: the reply as a sequence of text fragments, no end marker."""
    await ws.accept()

    state = ws.app.state
    session = RelaySession.from_settings(
        WebSocketConnection(ws), state.backend, state.recorder, state.settings,
    )
    try:
        await session.run()
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("relay session failed")
        if ws.application_state is WebSocketState.CONNECTED:
            await ws.close(code=1011)
