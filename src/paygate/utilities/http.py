"""Utilities for creating the httpx clients used by provider tools."""

from typing import Any, Protocol

import httpx

__all__ = ["HttpClientFactory", "create_http_client"]


class HttpClientFactory(Protocol):
    def __call__(self, **kwargs: Any) -> httpx.AsyncClient: ...


def create_http_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create an httpx AsyncClient with the gateway defaults.

    Defaults are ``follow_redirects=True`` and a 30 second timeout; any
    keyword accepted by ``httpx.AsyncClient`` overrides them. The client must
    be used as an async context manager.

    Examples:
        async with create_http_client(base_url="https://api.nowpayments.io/v1") as client:
            response = await client.get("/currencies")

        # Tests swap the network for a handler
        async with create_http_client(transport=httpx.MockTransport(handler)) as client:
            ...
    """
    default_kwargs: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": httpx.Timeout(30.0),
    }
    default_kwargs.update(kwargs)
    return httpx.AsyncClient(**default_kwargs)
