import asyncio
from typing import Optional


class DestinationRelay(asyncio.Protocol):
    """
    Outbound half of a relayed pair: everything the destination sends is
    written verbatim to the client.

    Reading is paused from connection_made until start() is called, which
    happens right after the bind reply went out, so the client never sees
    destination bytes ahead of the reply.
    """

    def __init__(self, conn, log):
        self.conn = conn
        self.log = log
        self.transport: Optional[asyncio.Transport] = None

    def connection_made(self, transport):
        self.transport = transport
        transport.pause_reading()

    def start(self):
        if self.transport and not self.transport.is_closing():
            self.transport.resume_reading()

    def data_received(self, data: bytes):
        client = self.conn.transport
        if client is None or client.is_closing():
            return
        client.write(data)

    def eof_received(self):
        self.log.debug("SOCKS: destination %s closed its side", self.conn.ctx.peer)
        # returning a falsy value lets the transport close itself
        return False

    def connection_lost(self, exc: Optional[Exception]):
        self.conn.on_destination_lost(exc)

    # Destination write buffer is over its high-water mark: stop reading the client.
    def pause_writing(self):
        client = self.conn.transport
        if client is not None:
            client.pause_reading()

    def resume_writing(self):
        client = self.conn.transport
        if client is not None:
            client.resume_reading()
