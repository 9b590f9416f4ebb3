"""Run the gateway: ``python -m paygate``."""

from __future__ import annotations

import logging

import click
import uvicorn

from paygate.gateway import create_app
from paygate.settings import Settings
from paygate.utilities.logging import configure_logging

logger = logging.getLogger("paygate")


@click.command()
@click.option("--host", default=None, help="Interface to bind (overrides HOST)")
@click.option("--port", default=None, type=int, help="Port to listen on (overrides PORT)")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (overrides LOG_LEVEL)",
)
def main(host: str | None, port: int | None, log_level: str | None) -> int:
    """Run the paygate server."""
    overrides = {
        key: value
        for key, value in {"host": host, "port": port, "log_level": log_level and log_level.upper()}.items()
        if value is not None
    }
    settings = Settings(**overrides)
    configure_logging(settings.log_level)

    logger.info("Starting %s %s on %s:%d", settings.server_name, settings.server_version, settings.host, settings.port)
    logger.info("RPC endpoint: http://%s:%d%s", settings.host, settings.port, settings.rpc_path)

    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    main()
