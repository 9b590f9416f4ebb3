from collections.abc import AsyncIterator

import anyio
import httpx
import pytest
import sse_starlette
from packaging import version
from starlette.applications import Starlette

from paygate.gateway import create_app
from paygate.runner import ServerRunner
from paygate.settings import Settings
from paygate.transport.httphandler import StreamableHTTPHandler

SECRETS = {
    "coinpayments_ipn_secret": "cp-ipn-secret",
    "nowpayments_ipn_secret": "np-ipn-secret",
    "coinbase_commerce_webhook_secret": "cc-webhook-secret",
    "direct_crypto_webhook_secret": "direct-secret",
}


@pytest.fixture
def anyio_backend():
    return "asyncio"


SSE_STARLETTE_VERSION = version.parse(sse_starlette.__version__)
NEEDS_RESET = SSE_STARLETTE_VERSION < version.parse("3.0.0")


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """Reset sse-starlette's global AppStatus singleton before each test.

    Only needed for sse-starlette < 3.0.0, where ``should_exit_event`` is a
    module-level asyncio.Event bound to the first event loop that used it.
    """
    if not NEEDS_RESET:
        yield
        return

    from sse_starlette.sse import AppStatus

    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]
    yield
    AppStatus.should_exit_event = anyio.Event()  # type: ignore[attr-defined]


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, **SECRETS)  # type: ignore[call-arg]


@pytest.fixture
def app(settings: Settings) -> Starlette:
    return create_app(settings)


@pytest.fixture
async def client(app: Starlette) -> AsyncIterator[httpx.AsyncClient]:
    """An httpx client on the gateway app, with the lifespan started by hand.

    httpx's ASGITransport does not run the lifespan, so the runner and
    handler are set up here and stored on ``app.state``.
    """
    runner = ServerRunner(app.state.server)
    async with runner.run() as running:
        async with anyio.create_task_group() as tg:
            app.state.handler = StreamableHTTPHandler(running, tg)
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http_client:
                yield http_client
                await app.state.handler.close_all()
                tg.cancel_scope.cancel()
