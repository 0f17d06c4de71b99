import asyncio
import socket
from dataclasses import dataclass, field
from enum import Enum, IntEnum, auto
from typing import Optional

from backend.src.config import check_policy
from backend.src.relay import DestinationRelay
from shared.proto import (
    METHOD_NO_ACCEPTABLE,
    METHOD_NO_AUTH,
    IncompleteMessage,
    ProtocolError,
    bind_reply,
    method_reply,
    parse_greeting,
    parse_request,
)
from shared.utils import enable_keepalive, format_peer


class Socks5State(Enum):
    STOPPED = auto()
    RUNNING = auto()


class ConnState(IntEnum):
    """Per-connection handshake progress. Values only ever increase."""
    UNINITED = 1
    METHOD_SELECTED = 2
    REQUEST_RECEIVED = 3
    CMD_REPLIED = 4


@dataclass
class ConnectionContext:
    peer: str
    state: ConnState = ConnState.UNINITED
    destination: Optional[asyncio.Transport] = None
    target: Optional[tuple[str, int]] = None
    # client bytes that arrived before the destination was connected
    pending: bytearray = field(default_factory=bytearray)
    # partial handshake message, only used when reassembly is on
    buffer: bytearray = field(default_factory=bytearray)


class Socks5Connection(asyncio.Protocol):
    """
    One accepted client. data_received is the dispatcher: it reads the
    context state and hands the chunk to the matching handler.
    """

    def __init__(self, proxy: "Socks5Proxy"):
        self.proxy = proxy
        self.log = proxy.log
        self.transport: Optional[asyncio.Transport] = None
        self.ctx = ConnectionContext(peer="?")
        self._relay: Optional[DestinationRelay] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._handlers = {
            ConnState.UNINITED: self._on_greeting,
            ConnState.METHOD_SELECTED: self._on_request,
            ConnState.REQUEST_RECEIVED: self._hold,
        }

    # ---------- transport callbacks ----------

    def connection_made(self, transport):
        self.transport = transport
        self.ctx.peer = format_peer(transport.get_extra_info("peername"))
        if self.proxy.keepalive:
            enable_keepalive(transport.get_extra_info("socket"))
        self.proxy._register(self)
        self.log.info("SOCKS: new client %s", self.ctx.peer)

    def data_received(self, data: bytes):
        if self.ctx.state == ConnState.CMD_REPLIED:
            self._forward(data)
            return
        handler = self._handlers.get(self.ctx.state)
        if handler is None:
            return
        handler(data)

    def connection_lost(self, exc: Optional[Exception]):
        if exc:
            self.log.error("SOCKS: connection errored %s: %s", self.ctx.peer, exc)
        else:
            self.log.info("SOCKS: %s ended", self.ctx.peer)
        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
        dest = self.ctx.destination
        if dest is not None and not dest.is_closing():
            if exc:
                dest.abort()
            else:
                dest.close()
        self.proxy._unregister(self)

    # Client write buffer is over its high-water mark: stop reading the destination.
    def pause_writing(self):
        if self._relay and self._relay.transport:
            self._relay.transport.pause_reading()

    def resume_writing(self):
        if self._relay and self._relay.transport:
            self._relay.transport.resume_reading()

    def on_destination_lost(self, exc: Optional[Exception]):
        if exc:
            self.log.warning("SOCKS: destination of %s errored: %s", self.ctx.peer, exc)
        if self.transport is None or self.transport.is_closing():
            return
        if exc:
            self.transport.abort()
        else:
            self.transport.close()

    def destroy(self):
        """Drop the client immediately; unsent data is discarded."""
        if self.transport is not None:
            self.transport.abort()

    # ---------- handlers ----------

    def _advance(self, state: ConnState):
        if state < self.ctx.state:
            raise RuntimeError(f"state regression {self.ctx.state.name} -> {state.name}")
        self.ctx.state = state

    def _collect(self, data: bytes) -> bytes:
        if not self.proxy.reassemble:
            return data
        self.ctx.buffer.extend(data)
        return bytes(self.ctx.buffer)

    def _on_greeting(self, data: bytes):
        chunk = self._collect(data)
        try:
            methods = parse_greeting(chunk)
        except IncompleteMessage as e:
            if self.proxy.reassemble:
                return
            self.log.error("SOCKS: illegal greeting from %s (%s): %s", self.ctx.peer, e, chunk.hex())
            self.destroy()
            return
        except ProtocolError as e:
            self.log.error("SOCKS: illegal greeting from %s (%s): %s", self.ctx.peer, e, chunk.hex())
            self.destroy()
            return
        self.ctx.buffer.clear()

        if METHOD_NO_AUTH in methods:
            self.transport.write(method_reply(METHOD_NO_AUTH))
            self._advance(ConnState.METHOD_SELECTED)
            return

        self.log.error("SOCKS: no allowed methods from %s: %s", self.ctx.peer, chunk.hex())
        policy = self.proxy.no_method_policy
        if policy == "reject":
            self.transport.write(method_reply(METHOD_NO_ACCEPTABLE))
            self.transport.close()
        elif policy == "close":
            self.destroy()
        # "stall": leave the connection open in UNINITED

    def _on_request(self, data: bytes):
        chunk = self._collect(data)
        try:
            request, used = parse_request(chunk)
        except IncompleteMessage as e:
            if self.proxy.reassemble:
                return
            self.log.error("SOCKS: truncated request from %s (%s): %s", self.ctx.peer, e, chunk.hex())
            self.destroy()
            return
        except ProtocolError as e:
            self.log.error("SOCKS: bad request from %s (%s): %s", self.ctx.peer, e, chunk.hex())
            self.destroy()
            return
        except Exception as e:
            self.log.error("SOCKS: error cmd req from %s (%s): %s", self.ctx.peer, e, chunk.hex())
            self.destroy()
            return
        self.ctx.buffer.clear()

        self.ctx.pending.extend(chunk[used:])
        self.ctx.target = (request.host, request.port)
        self._advance(ConnState.REQUEST_RECEIVED)
        # nothing more is read from the client until the destination answers
        self.transport.pause_reading()
        self.log.info("SOCKS: connect %s:%s from %s", request.host, request.port, self.ctx.peer)
        self._connect_task = asyncio.get_running_loop().create_task(
            self._connect(request.host, request.port)
        )

    def _hold(self, data: bytes):
        self.ctx.pending.extend(data)

    def _forward(self, data: bytes):
        dest = self.ctx.destination
        if dest is not None and not dest.is_closing():
            dest.write(data)

    async def _connect(self, host: str, port: int):
        loop = asyncio.get_running_loop()
        relay = DestinationRelay(self, self.log)
        try:
            transport, _ = await asyncio.wait_for(
                loop.create_connection(lambda: relay, host=host, port=port, family=socket.AF_INET),
                timeout=self.proxy.connect_timeout or None,
            )
        except Exception as e:
            err_msg = str(e) or e.__class__.__name__
            self.log.error("SOCKS: create relay socket failed %s:%s (%s)", host, port, err_msg)
            if relay.transport is not None:
                relay.transport.abort()
            self.destroy()
            return

        if self.transport is None or self.transport.is_closing() or transport.is_closing():
            transport.close()
            self.destroy()
            return

        if self.proxy.keepalive:
            enable_keepalive(transport.get_extra_info("socket"))
        bound = transport.get_extra_info("sockname") or ("0.0.0.0", 0)
        self.transport.write(bind_reply(bound[0], bound[1]))
        self._advance(ConnState.CMD_REPLIED)
        self.ctx.destination = transport
        self._relay = relay
        self.log.info("SOCKS: relaying %s <-> %s:%s via %s:%s", self.ctx.peer, host, port, bound[0], bound[1])

        if self.ctx.pending:
            transport.write(bytes(self.ctx.pending))
            self.ctx.pending.clear()
        relay.start()
        self.transport.resume_reading()


class Socks5Proxy:
    """
    Minimal SOCKS5 proxy (no-auth, CONNECT only).
    Owns the listening socket; every accepted client gets a Socks5Connection
    with its own ConnectionContext.
    """

    def __init__(
        self,
        listen_host: str,
        listen_port: int,
        log,
        connect_timeout: float = 30.0,
        no_method_policy: str = "close",
        reassemble: bool = False,
        keepalive: bool = True,
    ):
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.log = log
        self.connect_timeout = connect_timeout
        self.no_method_policy = check_policy(no_method_policy)
        self.reassemble = reassemble
        self.keepalive = keepalive
        self.state = Socks5State.STOPPED
        self.total_connections = 0
        self._server: Optional[asyncio.base_events.Server] = None
        self._connections: set[Socks5Connection] = set()

    @classmethod
    async def start(cls, listen_host: str, listen_port: int, log, **options):
        instance = cls(listen_host, listen_port, log, **options)
        await instance.listen()
        return instance

    async def listen(self):
        loop = asyncio.get_running_loop()
        self._server = await loop.create_server(
            lambda: Socks5Connection(self), host=self.listen_host, port=self.listen_port
        )
        # port 0 asks the OS for a free port; report the real one
        self.listen_port = self._server.sockets[0].getsockname()[1]
        self.state = Socks5State.RUNNING
        self.log.info("SOCKS5 proxy listening on %s:%s", self.listen_host, self.listen_port)

    async def serve_forever(self):
        if not self._server:
            await self.listen()
        await self._server.serve_forever()

    async def stop(self):
        self.state = Socks5State.STOPPED
        if self._server:
            self._server.close()
        for conn in list(self._connections):
            conn.destroy()
        if self._server:
            await self._server.wait_closed()
            self._server = None
        self.log.info("SOCKS5 proxy stopped")

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    def connections(self) -> list[ConnectionContext]:
        return [conn.ctx for conn in self._connections]

    def _register(self, conn: Socks5Connection):
        self._connections.add(conn)
        self.total_connections += 1

    def _unregister(self, conn: Socks5Connection):
        self._connections.discard(conn)
