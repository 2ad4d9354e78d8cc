"""Fixed route table, relative to the broker's base host."""

ROOT = "/api/v1"
START_SESSION = "/start-session"
SEND = "/send"
FLUSH_MAILBOX = "/flush-mailbox"
WEBSOCKET = "/socket"


def build_route(host: str, route: str) -> str:
    return f"{host.rstrip('/')}{ROOT}{route}"
