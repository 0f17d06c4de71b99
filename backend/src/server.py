import asyncio

from backend.src.config import Config
from backend.src.logger import get_logger
from backend.src.socks5_proxy import Socks5Proxy

log = get_logger("server", Config.LOG_LEVEL)


async def main():
    proxy = Socks5Proxy(
        Config.HOST,
        Config.PORT,
        get_logger("socks5", Config.LOG_LEVEL),
        connect_timeout=Config.CONNECT_TIMEOUT,
        no_method_policy=Config.NO_METHOD_POLICY,
        reassemble=Config.REASSEMBLE,
        keepalive=Config.TCP_KEEPALIVE,
    )
    try:
        await proxy.listen()
    except OSError as e:
        log.error("server error: %s", e)
        raise SystemExit(1)

    try:
        await proxy.serve_forever()
    finally:
        await proxy.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Server shutdown requested")
