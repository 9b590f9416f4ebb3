"""Inbound payment-provider webhooks."""

from paygate.webhooks.events import PaymentLifecycle, WebhookEvent, parse_event
from paygate.webhooks.signatures import Provider, compute_signature, verify

__all__ = ["PaymentLifecycle", "Provider", "WebhookEvent", "compute_signature", "parse_event", "verify"]
