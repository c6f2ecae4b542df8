"""WebSocket endpoint — live price delivery to browser clients.

Learn: Each browser connects to /ws. There's no auth and no per-client
subscription: every client gets every message on the channel, and
anything a client sends is published back onto it.

The endpoint itself is thin — the relay owns the session lifecycle
(handshake, registry, inbound loop, cleanup) so it can be tested without
a real socket.
"""

from fastapi import APIRouter, WebSocket

from pricerelay.realtime.session import WebSocketTransport

router = APIRouter()


@router.websocket("/ws")
async def prices_websocket(websocket: WebSocket):
    """Stream channel messages to the client and republish what it sends."""
    relay = websocket.app.state.relay
    await relay.handle_session(WebSocketTransport(websocket))
