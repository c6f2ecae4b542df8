"""Client sessions — one live bidirectional connection each.

Learn: A session is a tiny state machine:

    CONNECTING ──accept()──▶ OPEN ──(remote close | send failure | close())──▶ CLOSED

CLOSED is terminal. A reconnecting browser gets a brand new session (new id).

Outbound delivery never blocks the caller. Fan-out drops each payload into a
bounded FIFO outbox and a per-session writer task drains it, one send at a
time, each bounded by send_timeout. A full outbox or a slow/failed send
closes the session, so a stalled browser tab can't hold memory or stall
the other clients. Closing is bounded by send_timeout as well: the transport
close handshake gets the same budget as a send.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import structlog
from fastapi import WebSocket
from starlette.websockets import WebSocketState

from pricerelay.errors import SendError, TransportAcceptError

logger = structlog.get_logger()


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


# ─── Transports ───────────────────────────────────────────


class Transport(ABC):
    """The wire under a session. WebSocket in production, fakes in tests."""

    @abstractmethod
    async def accept(self) -> None: ...

    @abstractmethod
    async def send(self, payload: bytes) -> None: ...

    @abstractmethod
    async def receive(self) -> Optional[bytes]:
        """Next inbound payload, or None once the remote side has closed."""

    @abstractmethod
    async def close(self, code: int = 1000) -> None: ...


class WebSocketTransport(Transport):
    """Starlette WebSocket adapter.

    Learn: Browsers expect text frames for JSON. Payloads are UTF-8 so they
    go out as text unchanged; anything that isn't valid UTF-8 is sent as a
    binary frame instead of being mangled.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def accept(self) -> None:
        await self.websocket.accept()

    async def send(self, payload: bytes) -> None:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            await self.websocket.send_bytes(payload)
        else:
            await self.websocket.send_text(text)

    async def receive(self) -> Optional[bytes]:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"].encode("utf-8")
        return message.get("bytes") or b""

    async def close(self, code: int = 1000) -> None:
        if (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        ):
            await self.websocket.close(code=code)


# ─── Session ──────────────────────────────────────────────


class ClientSession:
    """One connected client, owned by a RelayServer's registry."""

    def __init__(
        self,
        transport: Transport,
        *,
        queue_size: int = 256,
        send_timeout: float = 5.0,
        on_close: Optional[Callable[["ClientSession"], Awaitable[None]]] = None,
    ):
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.send_timeout = send_timeout
        self.state = SessionState.CONNECTING
        self.opened_at: Optional[datetime] = None
        self.close_reason: Optional[str] = None
        self.failed = False
        self.sent = 0
        self._outbox: asyncio.Queue[bytes] = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self._on_close = on_close

    def __repr__(self) -> str:
        return f"<ClientSession {self.id} {self.state.value}>"

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def pending(self) -> int:
        return self._outbox.qsize()

    async def open(self) -> None:
        """Complete the handshake and start the writer task."""
        if self.state is not SessionState.CONNECTING:
            raise TransportAcceptError(f"session {self.id} is {self.state.value}")
        try:
            await self.transport.accept()
        except Exception as e:
            self.state = SessionState.CLOSED
            self.close_reason = "handshake failed"
            raise TransportAcceptError(f"handshake failed: {e}") from e

        self.state = SessionState.OPEN
        self.opened_at = datetime.now(timezone.utc)
        self._writer = asyncio.create_task(
            self._write_loop(), name=f"session-writer-{self.id}"
        )

    def offer(self, payload: bytes) -> None:
        """Queue a payload for delivery without waiting.

        Raises SendError if the session isn't open or its outbox is full.
        """
        if self.state is not SessionState.OPEN:
            raise SendError(self.id, f"session is {self.state.value}")
        try:
            self._outbox.put_nowait(payload)
        except asyncio.QueueFull:
            raise SendError(self.id, "outbox full") from None

    async def flush(self) -> None:
        """Wait until everything queued so far was sent (or discarded)."""
        await self._outbox.join()

    async def receive(self) -> Optional[bytes]:
        if self.state is not SessionState.OPEN:
            return None
        return await self.transport.receive()

    async def close(
        self,
        code: int = 1000,
        reason: str = "server close",
        failed: bool = False,
    ) -> None:
        """Move to CLOSED. Safe to call any number of times."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.close_reason = reason
        self.failed = failed

        # Cancel only; a writer stuck in send must not block close()
        writer, self._writer = self._writer, None
        if writer is not None and writer is not asyncio.current_task():
            writer.cancel()
        self._discard_pending()

        try:
            async with asyncio.timeout(self.send_timeout):
                await self.transport.close(code)
        except TimeoutError:
            logger.debug("session.close_timed_out", session_id=self.id)
        except Exception as e:
            # Remote side already gone
            logger.debug("session.close_failed", session_id=self.id, error=str(e))

        if self._on_close is not None:
            await self._on_close(self)

    def _discard_pending(self) -> None:
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbox.task_done()

    async def _write_loop(self) -> None:
        while self.state is SessionState.OPEN:
            payload = await self._outbox.get()
            try:
                async with asyncio.timeout(self.send_timeout):
                    await self.transport.send(payload)
            except TimeoutError:
                reason = f"send timed out after {self.send_timeout}s"
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
            else:
                self.sent += 1
                continue
            finally:
                self._outbox.task_done()

            logger.warning("session.send_failed", session_id=self.id, reason=reason)
            await self.close(code=1011, reason=reason, failed=True)
            return
