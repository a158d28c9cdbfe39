"""One accepted transport session and its outbound queue.

A Connection owns a bounded ``asyncio.Queue`` of serialised frames and a
writer task that drains it onto the transport. Producers (the Router, via
the Registry) only ever call :meth:`Connection.enqueue`, which never
blocks: a full queue aborts the connection instead.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Optional, Protocol, Union

import websockets

from chatrelay.config import settings
from chatrelay.errors import TransportError
from chatrelay.protocol.types import CLOSE_INTERNAL_ERROR, CLOSE_NORMAL, CLOSE_POLICY_VIOLATION

log = logging.getLogger(__name__)

ConnectionId = str

_counter = itertools.count(1)


def new_connection_id() -> ConnectionId:
    return f"c{next(_counter)}-{uuid.uuid4().hex[:8]}"


class Transport(Protocol):
    """What a Connection needs from a message-framed socket.

    ``websockets`` server connections satisfy this directly; other servers
    are wrapped (see ``chatrelay.main.StarletteTransport``).
    """

    async def recv(self) -> Union[str, bytes]: ...

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None: ...


# errors that mean "this peer is gone"
TRANSPORT_ERRORS = (websockets.ConnectionClosed, TransportError, ConnectionError)


class Connection:
    def __init__(
        self,
        transport: Transport,
        *,
        conn_id: Optional[ConnectionId] = None,
        identity: Optional[str] = None,
        remote: Optional[str] = None,
        queue_size: Optional[int] = None,
        send_timeout: Optional[float] = None,
    ) -> None:
        self.id: ConnectionId = conn_id or new_connection_id()
        self.transport = transport
        self.identity = identity        # authenticated UserId, if an identity provider supplied one
        self.remote = remote
        self.user_id: Optional[str] = None

        self.outbound: asyncio.Queue = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else settings.OUTBOUND_QUEUE_SIZE
        )
        self.send_timeout = send_timeout if send_timeout is not None else settings.SEND_TIMEOUT

        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    def tag(self) -> str:
        return f"{self.id}({self.user_id or '-'})"

    def __repr__(self) -> str:
        return f"<Connection {self.tag()} closed={self.closed}>"

    # producer side

    def enqueue(self, data: str) -> bool:
        """Queue one frame for sending. False means the frame was dropped."""
        if self.closed:
            return False
        try:
            self.outbound.put_nowait(data)
        except asyncio.QueueFull:
            log.warning("outbound queue full for %s, closing", self.tag())
            self.abort(CLOSE_POLICY_VIOLATION, "outbound queue full")
            return False
        return True

    # writer

    def start_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"writer-{self.id}")

    async def _write_loop(self) -> None:
        while True:
            data = await self.outbound.get()
            if data is None:
                return
            try:
                await asyncio.wait_for(self.transport.send(data), self.send_timeout)
            except asyncio.TimeoutError:
                log.warning("send to %s timed out after %.1fs, closing", self.tag(), self.send_timeout)
                self.abort(CLOSE_INTERNAL_ERROR, "send timeout")
                return
            except asyncio.CancelledError:
                raise
            except TRANSPORT_ERRORS as e:
                log.debug("write to %s failed: %s", self.tag(), e)
                self.abort(CLOSE_NORMAL, "transport closed")
                return
            except Exception:
                log.exception("writer for %s failed", self.tag())
                self.abort(CLOSE_INTERNAL_ERROR, "send failed")
                return

    # shutdown

    def abort(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Stop accepting frames and start closing the transport.

        Safe to call from a producer: it never awaits. The reader sees the
        transport close and leaves its loop.
        """
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason

        while not self.outbound.empty():
            self.outbound.get_nowait()
        self.outbound.put_nowait(None)

        self._closer = asyncio.create_task(self._close_transport(code, reason), name=f"closer-{self.id}")

    async def _close_transport(self, code: int, reason: str) -> None:
        try:
            await self.transport.close(code, reason)
        except Exception as e:
            # transport may already be torn down by the peer
            log.debug("close of %s raised: %s", self.tag(), e)

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Close and wait until the writer and the transport are done."""
        self.abort(code, reason)
        if self._writer is not None:
            done, _ = await asyncio.wait({self._writer}, timeout=self.send_timeout)
            if not done:
                self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
        if self._closer is not None:
            await self._closer
