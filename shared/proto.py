import socket
import struct
from dataclasses import dataclass

# https://tools.ietf.org/html/rfc1928
SOCKS_VERSION = 0x05

# Methods
METHOD_NO_AUTH = 0x00
METHOD_NO_ACCEPTABLE = 0xFF

# Commands
CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03

# Address types
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

# Replies
REP_SUCCEEDED = 0x00
RSV = 0x00


class ProtocolError(ValueError):
    """Message violates the subset of RFC 1928 this proxy speaks."""


class IncompleteMessage(ProtocolError):
    """Buffer holds only a prefix of a message."""


@dataclass
class Request:
    cmd: int
    atyp: int
    host: str
    port: int


def parse_greeting(buf: bytes) -> bytes:
    """
    Validate a method-negotiation message and return its METHODS field.

        +----+----------+----------+
        |VER | NMETHODS | METHODS  |
        +----+----------+----------+
        | 1  |    1     | 1 to 255 |
        +----+----------+----------+

    Checks run in a fixed order: version, minimum length, non-zero method
    count, exact length. A buffer that could still grow into a valid
    greeting raises IncompleteMessage; trailing bytes are a violation.
    """
    if not buf:
        raise IncompleteMessage("empty greeting")
    if buf[0] != SOCKS_VERSION:
        raise ProtocolError(f"bad version {buf[0]}")
    if len(buf) < 2:
        raise IncompleteMessage("greeting shorter than 2 bytes")
    nmethods = buf[1]
    if nmethods == 0:
        raise ProtocolError("no methods offered")
    if len(buf) < nmethods + 2:
        raise IncompleteMessage(f"expected {nmethods + 2} bytes, got {len(buf)}")
    if len(buf) > nmethods + 2:
        raise ProtocolError(f"expected {nmethods + 2} bytes, got {len(buf)}")
    return bytes(buf[2:])


def parse_request(buf: bytes) -> tuple[Request, int]:
    """
    Parse a CONNECT request. Returns the request and the number of bytes
    it occupied; anything past that belongs to the relayed stream.

        +----+-----+-------+------+----------+----------+
        |VER | CMD |  RSV  | ATYP | DST.ADDR | DST.PORT |
        +----+-----+-------+------+----------+----------+
        | 1  |  1  | X'00' |  1   | Variable |    2     |
        +----+-----+-------+------+----------+----------+
    """
    if not buf:
        raise IncompleteMessage("empty request")
    if buf[0] != SOCKS_VERSION:
        raise ProtocolError(f"request version {buf[0]}")
    if len(buf) < 2:
        raise IncompleteMessage("request shorter than 2 bytes")
    cmd = buf[1]
    if cmd != CMD_CONNECT:
        raise ProtocolError(f"cmd {cmd} not supported")
    if len(buf) < 4:
        raise IncompleteMessage("request header shorter than 4 bytes")

    atyp = buf[3]
    if atyp == ATYP_IPV4:
        if len(buf) < 10:
            raise IncompleteMessage("truncated IPv4 request")
        host = ".".join(str(b) for b in buf[4:8])
        port = struct.unpack("!H", buf[8:10])[0]
        return Request(cmd, atyp, host, port), 10

    if atyp == ATYP_DOMAIN:
        if len(buf) < 5:
            raise IncompleteMessage("missing domain length")
        ln = buf[4]
        if ln == 0:
            raise ProtocolError("empty domain name")
        if len(buf) < 7 + ln:
            raise IncompleteMessage(f"truncated domain request (len={ln})")
        host = bytes(buf[5 : 5 + ln]).decode("utf-8")
        port = struct.unpack("!H", buf[5 + ln : 7 + ln])[0]
        return Request(cmd, atyp, host, port), 7 + ln

    raise ProtocolError(f"address type {atyp} not supported")


def method_reply(method: int) -> bytes:
    return bytes([SOCKS_VERSION, method])


def bind_reply(bind_host: str, bind_port: int) -> bytes:
    """Success reply; BND.ADDR is always encoded as IPv4."""
    try:
        addr = socket.inet_aton(bind_host)
    except (OSError, TypeError):
        addr = b"\x00\x00\x00\x00"
    return struct.pack("!BBBB", SOCKS_VERSION, REP_SUCCEEDED, RSV, ATYP_IPV4) + addr + struct.pack("!H", bind_port)


def connect_request(host: str, port: int) -> bytes:
    """Client-side CONNECT request; IPv4 literals use ATYP 1, anything else ATYP 3."""
    try:
        addr = socket.inet_aton(host)
        if host.count(".") != 3:
            raise OSError
        body = bytes([ATYP_IPV4]) + addr
    except OSError:
        name = host.encode()
        if len(name) > 255:
            raise ProtocolError("domain name too long")
        body = bytes([ATYP_DOMAIN, len(name)]) + name
    return bytes([SOCKS_VERSION, CMD_CONNECT, RSV]) + body + struct.pack("!H", port)
