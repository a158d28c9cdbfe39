# chatrelay/realtime/server.py

# Server loop (WebSockets)

'''Accepts transports, runs one read loop per connection and hands each
decoded envelope to the Router.

Each WebSocket text frame is one JSON envelope (no newline framing).
The same per-connection lifecycle backs both the standalone listener
started here and the ``/ws`` endpoint of the HTTP app.'''

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from websockets.asyncio.server import Server, ServerConnection, serve

from chatrelay.config import settings
from chatrelay.errors import MalformedEnvelope
from chatrelay.persistence.message_log import MessageStore
from chatrelay.protocol.envelope import error_frame, parse_envelope
from chatrelay.protocol.types import CLOSE_GOING_AWAY, CLOSE_NORMAL, CLOSE_POLICY_VIOLATION
from chatrelay.security.auth import IdentityProvider, TokenIdentity
from .connection import TRANSPORT_ERRORS, Connection, Transport
from .registry import Registry
from .router import Router


class ChatServer:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        *,
        registry: Optional[Registry] = None,
        store: Optional[MessageStore] = None,
        router: Optional[Router] = None,
        identity: Optional[IdentityProvider] = None,
        require_auth: Optional[bool] = None,
        read_timeout: Optional[float] = None,
        queue_size: Optional[int] = None,
        send_timeout: Optional[float] = None,
        report_errors: Optional[bool] = None,
    ) -> None:
        self.host = settings.HOST if host is None else host
        self.port = settings.PORT if port is None else port
        self.registry = registry if registry is not None else Registry()
        self.router = router if router is not None else Router(self.registry, store)
        self.identity = identity if identity is not None else TokenIdentity()
        self.require_auth = settings.REQUIRE_AUTH if require_auth is None else require_auth
        self.read_timeout = settings.WS_READ_TIMEOUT if read_timeout is None else read_timeout
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self.report_errors = settings.REPORT_ERRORS if report_errors is None else report_errors
        self._server: Optional[Server] = None
        self.log = logging.getLogger("chatrelay.server")

    # start/stop
    async def start(self) -> None:
        self._server = await serve(
            self._on_conn,
            self.host,
            self.port,
            max_size=settings.WS_MAX_MESSAGE_SIZE,
            logger=logging.getLogger("chatrelay.accept"),
        )
        self.port = self._server.sockets[0].getsockname()[1]
        self.log.info("WebSocket listening on ws://%s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.router.drain()
        self.registry.clear()
        self.log.info("server stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()  # run forever
        finally:
            await self.stop()

    # connection lifecycle
    async def _on_conn(self, ws: ServerConnection) -> None:
        identity = None
        try:
            identity = self.identity.identify(ws.request.path, ws.request.headers)
        except Exception:
            self.log.exception("identity provider failed")
        await self.handle_transport(ws, identity=identity, remote=_peer(ws))

    async def handle_transport(
        self,
        transport: Transport,
        *,
        identity: Optional[str] = None,
        remote: Optional[str] = None,
    ) -> None:
        """Run one connection from accept to close."""
        if self.require_auth and identity is None:
            self.log.info("rejecting unauthenticated connection from %s", remote)
            await transport.close(CLOSE_POLICY_VIOLATION, "authentication required")
            return

        conn = Connection(
            transport,
            identity=identity,
            remote=remote,
            queue_size=self.queue_size,
            send_timeout=self.send_timeout,
        )
        self.registry.add_connection(conn)
        conn.start_writer()
        self.log.info("connected: %s from %s", conn.id, remote)
        try:
            await self._read_loop(conn)
        except TRANSPORT_ERRORS as e:
            self.log.debug("transport closed for %s: %s", conn.tag(), e)
        except asyncio.TimeoutError:
            self.log.info("read timeout on %s after %.0fs", conn.tag(), self.read_timeout)
            conn.abort(CLOSE_GOING_AWAY, "idle timeout")
        except Exception as e:
            self.log.exception("link error on %s: %s", conn.tag(), e)
        finally:
            try:
                await conn.close(conn.close_code or CLOSE_NORMAL, conn.close_reason)
            finally:
                self.registry.unregister(conn.id)
                self.log.info("disconnected: %s", conn.tag())

    async def _read_loop(self, conn: Connection) -> None:
        while not conn.closed:
            if self.read_timeout:
                raw = await asyncio.wait_for(conn.transport.recv(), self.read_timeout)
            else:
                raw = await conn.transport.recv()
            await self._handle_frame(raw, conn)

    async def _handle_frame(self, raw, conn: Connection) -> None:
        try:
            envelope = parse_envelope(raw)
        except MalformedEnvelope as e:
            self.log.warning("malformed envelope from %s: %s", conn.tag(), e)
            if self.report_errors:
                conn.enqueue(error_frame(e.code, e.detail))
            return
        if envelope is None:
            return
        await self.router.dispatch(conn, envelope)


def _peer(ws: ServerConnection) -> Optional[str]:
    addr = ws.remote_address
    if not addr:
        return None
    return f"{addr[0]}:{addr[1]}"
