"""paygate: crypto payment tools over MCP streamable HTTP, plus provider webhooks."""

__version__ = "0.1.0"

from paygate.exceptions import GatewayError, ProtocolError, SessionNotFoundError  # noqa: E402
from paygate.gateway import create_app  # noqa: E402
from paygate.server import GatewayServer  # noqa: E402
from paygate.settings import Settings  # noqa: E402

__all__ = [
    "GatewayError",
    "GatewayServer",
    "ProtocolError",
    "SessionNotFoundError",
    "Settings",
    "__version__",
    "create_app",
]
