import os

from shared.utils import env_flag

NO_METHOD_POLICIES = ("close", "reject", "stall")
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8124

class Config:
    HOST = os.getenv("SOCKS_LISTEN_HOST", DEFAULT_HOST)
    PORT = int(os.getenv("SOCKS_LISTEN_PORT", DEFAULT_PORT))
    CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "30"))
    NO_METHOD_POLICY = os.getenv("NO_METHOD_POLICY", "close")  # close | reject | stall
    REASSEMBLE = env_flag(os.getenv("REASSEMBLE"), False)
    TCP_KEEPALIVE = env_flag(os.getenv("TCP_KEEPALIVE"), True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

def check_policy(policy: str) -> str:
    if policy not in NO_METHOD_POLICIES:
        raise ValueError(f"NO_METHOD_POLICY must be one of {', '.join(NO_METHOD_POLICIES)}, got {policy!r}")
    return policy
