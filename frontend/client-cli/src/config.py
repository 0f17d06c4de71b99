import os

PROXY_HOST = os.getenv("PROXY_HOST", "127.0.0.1")
PROXY_PORT = int(os.getenv("PROXY_PORT", "8124"))
TARGET_HOST = os.getenv("TARGET_HOST", "example.com")
TARGET_PORT = int(os.getenv("TARGET_PORT", "80"))
PAYLOAD = os.getenv("PAYLOAD", "HEAD / HTTP/1.0\r\nHost: example.com\r\n\r\n")
