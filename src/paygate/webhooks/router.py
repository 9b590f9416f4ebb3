"""WebhookRouter: one endpoint per provider, verifying before anything else is trusted."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import BaseRoute, Route

from paygate.exceptions import InvalidPayloadError, InvalidSignatureError, WebhookError
from paygate.settings import Settings
from paygate.utilities.logging import redact_sensitive_data
from paygate.webhooks import signatures
from paygate.webhooks.events import PaymentLifecycle, WebhookEvent, classify, parse_event
from paygate.webhooks.signatures import Provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookDelivery:
    """One inbound HTTP delivery. Lives only for the duration of its request."""

    provider: Provider
    raw_body: bytes = field(repr=False)
    signature: str | None = field(repr=False)
    verified: bool
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ProcessedWebhook:
    """What listeners receive: the parsed event, its lifecycle and the delivery it came from."""

    delivery: WebhookDelivery
    event: WebhookEvent
    lifecycle: PaymentLifecycle

    @property
    def provider(self) -> Provider:
        return self.delivery.provider


WebhookListener = Callable[[ProcessedWebhook], Awaitable[None]]


class WebhookRouter:
    """Authenticates, parses and classifies provider webhooks.

    Processing order for each delivery: verify the signature over the raw
    bytes, parse the payload, classify the event, notify listeners, then
    acknowledge. Nothing is parsed before the signature checks out. A
    listener that raises is logged and does not affect the acknowledgment:
    providers retry on non-2xx, and the delivery itself was valid.
    """

    def __init__(self, settings: Settings, *, listeners: Iterable[WebhookListener] = ()) -> None:
        self._settings = settings
        self._listeners: list[WebhookListener] = list(listeners)

    def add_listener(self, listener: WebhookListener) -> WebhookListener:
        self._listeners.append(listener)
        return listener

    def authenticate(self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]) -> WebhookDelivery:
        """Verify the delivery's signature.

        Raises:
            InvalidSignatureError: if the signature is missing or wrong, or no
                secret is configured and unverified deliveries are not allowed.
        """
        signature = headers.get(signatures.signature_header(provider))
        secret = self._settings.webhook_secret(provider)

        if secret is None:
            if not self._settings.webhook_allow_unverified:
                logger.warning("Rejecting %s webhook: no secret configured", provider.value)
                raise InvalidSignatureError(f"No webhook secret configured for {provider.value}")
            logger.warning("Accepting unverified %s webhook: no secret configured", provider.value)
            return WebhookDelivery(provider=provider, raw_body=raw_body, signature=signature, verified=False)

        if not signatures.verify(provider, raw_body, signature, secret):
            logger.warning(
                "Invalid %s webhook signature (headers: %s)",
                provider.value,
                redact_sensitive_data(dict(headers)),
            )
            raise InvalidSignatureError("Invalid signature")
        return WebhookDelivery(provider=provider, raw_body=raw_body, signature=signature, verified=True)

    async def process(self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        """Run one delivery through the pipeline and return the acknowledgment body.

        Raises:
            InvalidSignatureError: authentication failed (401).
            InvalidPayloadError: the authentic payload is unusable (400).
        """
        delivery = self.authenticate(provider, raw_body, headers)
        try:
            event = parse_event(provider, raw_body)
        except InvalidPayloadError as e:
            logger.info("Rejecting %s webhook: %s", provider.value, e)
            raise

        lifecycle = classify(event, min_confirmations=self._settings.min_confirmations)
        logger.info(
            "%s webhook %s: %s%s",
            provider.value,
            event.event_id,
            lifecycle.value,
            "" if delivery.verified else " (unverified)",
        )

        processed = ProcessedWebhook(delivery=delivery, event=event, lifecycle=lifecycle)
        for listener in self._listeners:
            try:
                await listener(processed)
            except Exception:
                logger.exception("Webhook listener %r failed for %s %s", listener, provider.value, event.event_id)

        ack = event.acknowledgment(lifecycle)
        if not delivery.verified:
            ack["verified"] = False
        return ack

    def _endpoint(self, provider: Provider) -> Callable[[Request], Awaitable[Response]]:
        async def endpoint(request: Request) -> Response:
            raw_body = await request.body()
            try:
                ack = await self.process(provider, raw_body, request.headers)
            except InvalidSignatureError:
                return JSONResponse({"error": "Invalid signature"}, status_code=InvalidSignatureError.status_code)
            except WebhookError as e:
                return JSONResponse({"error": str(e)}, status_code=e.status_code)
            except Exception:
                logger.exception("Error processing %s webhook", provider.value)
                return JSONResponse({"error": "Internal server error"}, status_code=500)
            return JSONResponse(ack)

        endpoint.__name__ = f"webhook_{provider.name.lower()}"
        return endpoint

    def paths(self, prefix: str = "/webhook") -> dict[Provider, str]:
        return {provider: f"{prefix}/{provider.value}" for provider in Provider}

    def routes(self, prefix: str = "/webhook") -> list[BaseRoute]:
        return [Route(path, self._endpoint(provider), methods=["POST"]) for provider, path in self.paths(prefix).items()]
