import asyncio


async def read_until_closed(reader, timeout=3.0) -> bytes:
    """Everything the peer sent before closing; a reset counts as closed."""
    data = bytearray()
    try:
        while True:
            chunk = await asyncio.wait_for(reader.read(4096), timeout)
            if not chunk:
                break
            data.extend(chunk)
    except (ConnectionResetError, BrokenPipeError):
        pass
    return bytes(data)


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
