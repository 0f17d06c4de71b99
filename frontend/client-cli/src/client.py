import sys
import pathlib
import asyncio

# Root of repo = three levels up from this file: src -> client-cli -> frontend -> repo
ROOT = pathlib.Path(__file__).resolve().parents[3]
sys.path.append(str(ROOT))

from backend.src.logger import get_logger
from shared.socks5_client import open_connection, Socks5ClientError
from config import PROXY_HOST, PROXY_PORT, TARGET_HOST, TARGET_PORT, PAYLOAD  # from same folder

log = get_logger("client")

async def main():
    try:
        reader, writer, bound = await open_connection(PROXY_HOST, PROXY_PORT, TARGET_HOST, TARGET_PORT)
    except (OSError, Socks5ClientError) as e:
        log.error("Proxy connect failed: %s", e)
        raise SystemExit(1)
    log.info("Connected to %s:%s via %s:%s (bound %s:%s)", TARGET_HOST, TARGET_PORT, PROXY_HOST, PROXY_PORT, *bound)

    writer.write(PAYLOAD.encode())
    await writer.drain()
    resp = await reader.read()
    if resp:
        print(resp.decode(errors="replace"))
    else:
        log.error("No response")
    writer.close()
    await writer.wait_closed()

if __name__ == "__main__":
    asyncio.run(main())
