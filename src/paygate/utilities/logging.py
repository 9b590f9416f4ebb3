"""Logging setup for the gateway process."""

import logging
from collections.abc import Mapping
from typing import Any, Literal

from rich.console import Console
from rich.logging import RichHandler

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "x-api-key",
        "x-cc-api-key",
        "api_key",
        "secret",
        "ipn_secret",
        "webhook_secret",
        "hmac",
        "x-nowpayments-sig",
        "x-cc-webhook-signature",
        "x-crypto-signature",
        "signature",
    }
)


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
) -> None:
    """Send log records to stderr through a RichHandler.

    Args:
        level: the log level to use
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def redact_sensitive_data(
    data: Mapping[str, Any] | None,
    sensitive_keys: frozenset[str] | set[str] | None = None,
) -> Mapping[str, Any] | None:
    """Return a shallow copy with secret and signature values replaced by "***".

    Keys are matched case-insensitively, so HTTP header mappings can be passed
    as they are. Signatures keep a short prefix to help correlate deliveries.
    """
    if data is None:
        return None

    sensitive_keys = sensitive_keys or SENSITIVE_KEYS

    redacted: dict[str, Any] = {}
    for key, value in data.items():
        lowered = key.lower()
        if lowered in sensitive_keys:
            if "sig" in lowered or lowered == "hmac":
                redacted[key] = value[:8] + "..." if isinstance(value, str) and len(value) > 8 else "***"
            else:
                redacted[key] = "***"
        else:
            redacted[key] = value

    return redacted
