import os
import asyncio
from fastapi import FastAPI
from pydantic import BaseModel

from backend.src.config import DEFAULT_HOST, DEFAULT_PORT
from backend.src.logger import get_logger
from backend.src.socks5_proxy import Socks5Proxy, Socks5State
from shared.utils import env_flag

log = get_logger("control_api")
app = FastAPI(title="SOCKS5 Relay Control API", version="0.1.0")


class StatusResponse(BaseModel):
    running: bool
    listen_host: str
    listen_port: int
    active_connections: int = 0
    total_connections: int = 0
    error: str | None = None


class ConnectionInfo(BaseModel):
    peer: str
    state: str
    target: str | None = None


_state_lock = asyncio.Lock()
_socks_proxy: Socks5Proxy | None = None
_last_error: str | None = None


def _config():
    listen_host = os.environ.get("SOCKS_LISTEN_HOST", DEFAULT_HOST)
    listen_port = int(os.environ.get("SOCKS_LISTEN_PORT", DEFAULT_PORT))
    options = {
        "connect_timeout": float(os.environ.get("CONNECT_TIMEOUT", "30")),
        "no_method_policy": os.environ.get("NO_METHOD_POLICY", "close"),
        "reassemble": env_flag(os.environ.get("REASSEMBLE"), False),
        "keepalive": env_flag(os.environ.get("TCP_KEEPALIVE"), True),
    }
    return listen_host, listen_port, options


def _status() -> StatusResponse:
    listen_host, listen_port, _ = _config()
    if _socks_proxy:
        return StatusResponse(
            running=_socks_proxy.state == Socks5State.RUNNING,
            listen_host=_socks_proxy.listen_host,
            listen_port=_socks_proxy.listen_port,
            active_connections=_socks_proxy.active_connections,
            total_connections=_socks_proxy.total_connections,
            error=_last_error,
        )
    return StatusResponse(
        running=False,
        listen_host=listen_host,
        listen_port=listen_port,
        error=_last_error,
    )


async def _stop_socks_proxy():
    global _socks_proxy
    if _socks_proxy:
        await _socks_proxy.stop()
        _socks_proxy = None


@app.get("/status", response_model=StatusResponse)
async def status():
    return _status()


@app.get("/connections", response_model=list[ConnectionInfo])
async def connections():
    if not _socks_proxy:
        return []
    return [
        ConnectionInfo(
            peer=ctx.peer,
            state=ctx.state.name,
            target=f"{ctx.target[0]}:{ctx.target[1]}" if ctx.target else None,
        )
        for ctx in _socks_proxy.connections()
    ]


@app.post("/start", response_model=StatusResponse)
async def start():
    global _socks_proxy, _last_error

    async with _state_lock:
        if _socks_proxy and _socks_proxy.state == Socks5State.RUNNING:
            log.info("SOCKS5 proxy already running")
            return _status()

        listen_host, listen_port, options = _config()
        try:
            _socks_proxy = await Socks5Proxy.start(listen_host, listen_port, get_logger("socks5"), **options)
            _last_error = None
        except Exception as exc:
            log.exception("Start failed")
            _socks_proxy = None
            _last_error = str(exc)
        return _status()


@app.post("/stop", response_model=StatusResponse)
async def stop():
    global _last_error

    async with _state_lock:
        await _stop_socks_proxy()
        _last_error = None

    log.info("SOCKS5 proxy stopped via control API")
    return _status()


@app.on_event("shutdown")
async def shutdown():
    await _stop_socks_proxy()
