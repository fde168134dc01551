"""
Websocket to TCP relay for in-browser VNC consoles.

The browser presents the token issued by ``handle_websockify`` in a ``token``
cookie; the token resolves to the ``host:port`` of the console. Frames are
relayed as base64 text when the client negotiates the ``base64`` subprotocol
and as binary otherwise.
"""

import asyncio
import base64
import logging

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketState

from lobster.services.websockify import token_table

logger = logging.getLogger(__name__)

router = APIRouter()

READ_SIZE = 65536
POLICY_VIOLATION = 1008


def _split_target(target: str) -> tuple[str, int]:
    host, _, port = target.rpartition(":")
    return host.strip("[]"), int(port)


@router.websocket("/websockify")
async def websockify(websocket: WebSocket):
    target = token_table.lookup(websocket.cookies.get("token"))
    if target is None:
        logger.info("Websockify request with invalid token")
        await websocket.close(code=POLICY_VIOLATION)
        return

    use_base64 = "base64" in websocket.scope.get("subprotocols", [])
    host, port = _split_target(target)
    try:
        reader, writer = await asyncio.open_connection(host, port)
    except OSError as exc:
        logger.warning("Websockify could not connect to %s: %s", target, exc)
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept(subprotocol="base64" if use_base64 else None)
    logger.info("Websockify relay opened to %s", target)

    async def client_to_target():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                data = base64.b64decode(message["text"]) if use_base64 else message["text"].encode()
            else:
                data = message.get("bytes") or b""
            writer.write(data)
            await writer.drain()

    async def target_to_client():
        while True:
            data = await reader.read(READ_SIZE)
            if not data:
                return
            if use_base64:
                await websocket.send_text(base64.b64encode(data).decode())
            else:
                await websocket.send_bytes(data)

    tasks = [asyncio.create_task(client_to_target()), asyncio.create_task(target_to_client())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                logger.info("Websockify relay to %s ended: %s", target, task.exception())
    finally:
        writer.close()
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            await websocket.close()
        logger.info("Websockify relay closed to %s", target)
