import asyncio
import logging
import socket

import pytest
import pytest_asyncio

from backend.src.socks5_proxy import Socks5Proxy


async def _echo(reader, writer):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        writer.close()


@pytest_asyncio.fixture
async def echo_server():
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[:2]
    server.close()
    await server.wait_closed()


@pytest.fixture
def log():
    return logging.getLogger("socks5.test")


@pytest_asyncio.fixture
async def make_proxy(log):
    proxies = []

    async def factory(**options):
        options.setdefault("connect_timeout", 5)
        proxy = await Socks5Proxy.start("127.0.0.1", 0, log, **options)
        proxies.append(proxy)
        return proxy

    yield factory
    for proxy in proxies:
        await proxy.stop()


@pytest_asyncio.fixture
async def proxy(make_proxy):
    return await make_proxy()


@pytest.fixture
def closed_port():
    """A loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
