import asyncio
import socket
import struct

from shared.proto import (
    ATYP_IPV4,
    METHOD_NO_AUTH,
    REP_SUCCEEDED,
    SOCKS_VERSION,
    connect_request,
)


class Socks5ClientError(ConnectionError):
    pass


async def open_connection(proxy_host: str, proxy_port: int, host: str, port: int, timeout: float = 10):
    """
    Open a stream to host:port through a SOCKS5 proxy (no-auth, CONNECT).
    Returns (reader, writer, (bound_host, bound_port)).
    """
    reader, writer = await asyncio.open_connection(proxy_host, proxy_port)
    try:
        writer.write(bytes([SOCKS_VERSION, 1, METHOD_NO_AUTH]))
        await writer.drain()
        reply = await asyncio.wait_for(reader.readexactly(2), timeout)
        if reply != bytes([SOCKS_VERSION, METHOD_NO_AUTH]):
            raise Socks5ClientError(f"method negotiation refused: {reply.hex()}")

        writer.write(connect_request(host, port))
        await writer.drain()
        reply = await asyncio.wait_for(reader.readexactly(4), timeout)
        ver, rep, _rsv, atyp = reply
        if ver != SOCKS_VERSION or rep != REP_SUCCEEDED or atyp != ATYP_IPV4:
            raise Socks5ClientError(f"connect refused: {reply.hex()}")
        tail = await asyncio.wait_for(reader.readexactly(6), timeout)
        bound = (socket.inet_ntoa(tail[:4]), struct.unpack("!H", tail[4:])[0])
    except (asyncio.IncompleteReadError, ConnectionResetError) as e:
        writer.close()
        raise Socks5ClientError("proxy closed the connection during negotiation") from e
    except BaseException:
        writer.close()
        raise
    return reader, writer, bound
