"""Payment provider and hosted AI tools.

Each tool builds its provider client on demand from the settings, so a
missing API key turns into an error-shaped result for that tool only.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from paygate.context import RequestContext
from paygate.exceptions import ConfigurationError, InvalidPayloadError
from paygate.settings import Settings
from paygate.tools.providers import (
    JOB_FINISHED_STATUSES,
    CoinbaseCommerceClient,
    CoinPaymentsClient,
    Comput3Client,
    NowPaymentsClient,
)
from paygate.tools.registry import ToolRegistry
from paygate.types.tools import CallToolResult, ToolAnnotations
from paygate.utilities.http import HttpClientFactory, create_http_client
from paygate.webhooks import signatures
from paygate.webhooks.events import decode_payload
from paygate.webhooks.signatures import Provider

logger = logging.getLogger(__name__)

NOWPAYMENTS_STATUS_MEANINGS = {
    "waiting": "Payment is waiting to be received",
    "confirming": "Payment received, waiting for blockchain confirmations",
    "confirmed": "Payment confirmed on blockchain",
    "sending": "Payment is being processed and sent to your wallet",
    "partially_paid": "Partial payment received",
    "finished": "Payment completed successfully",
    "failed": "Payment failed",
    "refunded": "Payment was refunded",
    "expired": "Payment expired",
}

COINPAYMENTS_STATUS_MEANINGS = {
    "-1": "Cancelled or timed out",
    "0": "Waiting for buyer funds",
    "1": "Coin reception from the buyer confirmed",
    "2": "Queued for nightly payout",
    "3": "Withdrawal sent",
    "100": "Payment complete",
}

_READ_ONLY = ToolAnnotations(read_only_hint=True, open_world_hint=True)
_WRITES = ToolAnnotations(read_only_hint=False, open_world_hint=True)


def _string_props(*names: str) -> dict[str, Any]:
    return {name: {"type": "string"} for name in names}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _charge_status(charge: dict[str, Any]) -> str:
    timeline = charge.get("timeline") or []
    if timeline:
        return timeline[-1].get("status", "unknown")
    return "unknown"


def _charge_summary(charge: dict[str, Any]) -> dict[str, Any]:
    local = (charge.get("pricing") or {}).get("local") or {}
    return {
        "charge_id": charge.get("id"),
        "charge_code": charge.get("code"),
        "name": charge.get("name"),
        "description": charge.get("description"),
        "amount": local.get("amount"),
        "currency": local.get("currency"),
        "status": _charge_status(charge),
        "created_at": charge.get("created_at"),
        "expires_at": charge.get("expires_at"),
        "confirmed_at": charge.get("confirmed_at"),
        "hosted_url": charge.get("hosted_url"),
    }


def _timestamp(epoch: Any) -> str | None:
    if not isinstance(epoch, (int, float)):
        return None
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat()


def _verification_result(
    provider: Provider, raw_body: str, signature: str, secret: str | None, *, data_key: str = "webhook_data"
) -> CallToolResult:
    if not secret:
        return CallToolResult.error(f"Error: no webhook secret configured for {provider.value}")
    valid = signatures.verify(provider, raw_body.encode(), signature, secret)
    try:
        data: Any = decode_payload(provider, raw_body.encode())
    except InvalidPayloadError as e:
        data = {"error": str(e)}
    scheme = signatures.SCHEMES[provider]
    return CallToolResult.text(
        json.dumps(
            {
                "signature_valid": valid,
                data_key: data,
                "verification_method": f"HMAC-{scheme.digest().name.upper()}",
                "provider": provider.value,
            },
            indent=2,
        )
    )


def register_payment_tools(
    registry: ToolRegistry,
    settings: Settings,
    *,
    http_client_factory: HttpClientFactory = create_http_client,
) -> None:
    """Register the NowPayments, CoinPayments, Coinbase Commerce and Comput3 tools."""

    def coinpayments() -> CoinPaymentsClient:
        if not settings.coinpayments_public_key:
            raise ConfigurationError("COINPAYMENTS_PUBLIC_KEY is not set")
        if not settings.coinpayments_private_key:
            raise ConfigurationError("COINPAYMENTS_PRIVATE_KEY is not set")
        return CoinPaymentsClient(
            settings.coinpayments_public_key,
            settings.coinpayments_private_key,
            http_client_factory=http_client_factory,
        )

    def nowpayments() -> NowPaymentsClient:
        if not settings.nowpayments_api_key:
            raise ConfigurationError("NOWPAYMENTS_API_KEY is not set")
        return NowPaymentsClient(
            settings.nowpayments_api_key,
            sandbox=settings.nowpayments_sandbox,
            http_client_factory=http_client_factory,
        )

    def coinbase() -> CoinbaseCommerceClient:
        if not settings.coinbase_commerce_api_key:
            raise ConfigurationError("COINBASE_COMMERCE_API_KEY is not set")
        return CoinbaseCommerceClient(settings.coinbase_commerce_api_key, http_client_factory=http_client_factory)

    def comput3() -> Comput3Client:
        if not settings.comput3_api_key:
            raise ConfigurationError("COMPUT3_API_KEY is not set")
        return Comput3Client(
            settings.comput3_api_key,
            base_url=settings.comput3_base_url,
            http_client_factory=http_client_factory,
        )

    # NowPayments

    @registry.tool(
        "nowpayments-get-currencies",
        title="Get Available Currencies",
        description="Get list of available cryptocurrencies supported by NowPayments",
        annotations=_READ_ONLY,
    )
    async def get_currencies(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = nowpayments()
        currencies = await client.get_currencies()
        return {
            "currencies": currencies,
            "environment": client.environment,
            "total_currencies": len(currencies),
        }

    @registry.tool(
        "nowpayments-get-estimate",
        title="Get Price Estimate",
        description="Get estimated price for crypto payment based on current exchange rates",
        input_schema={
            "type": "object",
            "properties": {"amount": {"type": "number"}, **_string_props("currency_from", "currency_to")},
            "required": ["amount", "currency_from", "currency_to"],
        },
        annotations=_READ_ONLY,
    )
    async def get_estimate(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = nowpayments()
        estimate = await client.get_estimate(arguments["amount"], arguments["currency_from"], arguments["currency_to"])
        return {
            "estimated_amount": estimate.get("estimated_amount"),
            "currency_from": estimate.get("currency_from"),
            "currency_to": estimate.get("currency_to"),
            "amount_from": estimate.get("amount_from"),
            "environment": client.environment,
        }

    @registry.tool(
        "nowpayments-create-invoice",
        title="Create Crypto Payment Invoice",
        description="Create a crypto payment invoice with a hosted payment URL",
        input_schema={
            "type": "object",
            "properties": {
                "price_amount": {"type": "number"},
                **_string_props(
                    "price_currency",
                    "pay_currency",
                    "order_id",
                    "order_description",
                    "ipn_callback_url",
                    "success_url",
                    "cancel_url",
                ),
            },
            "required": ["price_amount", "price_currency", "order_id", "order_description"],
        },
        annotations=_WRITES,
    )
    async def create_invoice(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = nowpayments()
        invoice = await client.create_invoice(arguments)
        return {
            "invoice_id": invoice.get("id"),
            "invoice_url": invoice.get("invoice_url"),
            "pay_address": invoice.get("pay_address"),
            "pay_amount": invoice.get("pay_amount"),
            "pay_currency": invoice.get("pay_currency"),
            "price_amount": invoice.get("price_amount"),
            "price_currency": invoice.get("price_currency"),
            "order_id": invoice.get("order_id"),
            "order_description": invoice.get("order_description"),
            "created_at": invoice.get("created_at"),
            "environment": client.environment,
        }

    @registry.tool(
        "nowpayments-get-payment-status",
        title="Get Payment Status",
        description="Check the status of a payment by payment ID",
        input_schema={"type": "object", "properties": _string_props("payment_id"), "required": ["payment_id"]},
        annotations=_READ_ONLY,
    )
    async def get_payment_status(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = nowpayments()
        status = await client.get_payment_status(arguments["payment_id"])
        payment_status = status.get("payment_status")
        return {
            **status,
            "environment": client.environment,
            "status_meaning": NOWPAYMENTS_STATUS_MEANINGS.get(payment_status or "", "Unknown status"),
        }

    @registry.tool(
        "nowpayments-verify-webhook",
        title="Verify Webhook Signature",
        description="Verify a NowPayments webhook body against its x-nowpayments-sig header (HMAC-SHA512)",
        input_schema={
            "type": "object",
            "properties": _string_props("webhook_body", "signature"),
            "required": ["webhook_body", "signature"],
        },
        annotations=ToolAnnotations(read_only_hint=True),
    )
    async def nowpayments_verify_webhook(ctx: RequestContext, arguments: dict[str, Any]) -> CallToolResult:
        return _verification_result(
            Provider.NOWPAYMENTS, arguments["webhook_body"], arguments["signature"], settings.nowpayments_ipn_secret
        )

    # CoinPayments

    @registry.tool(
        "coinpayments-get-rates",
        title="Get Exchange Rates",
        description="Get current exchange rates for all supported cryptocurrencies",
        input_schema={"type": "object", "properties": {"short": {"type": "boolean"}}},
        annotations=_READ_ONLY,
    )
    async def get_rates(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        rates = await coinpayments().get_rates(short=arguments.get("short", False))
        return {"rates": rates, "currencies_count": len(rates), "provider": "CoinPayments"}

    @registry.tool(
        "coinpayments-create-transaction",
        title="Create Crypto Payment Transaction",
        description="Create a cryptocurrency payment transaction with QR code and payment address",
        input_schema={
            "type": "object",
            "properties": {
                "amount": {"type": "number", "exclusiveMinimum": 0},
                **_string_props(
                    "currency1",
                    "currency2",
                    "item_name",
                    "buyer_email",
                    "buyer_name",
                    "item_number",
                    "invoice",
                    "custom",
                    "success_url",
                    "cancel_url",
                    "ipn_url",
                ),
            },
            "required": ["amount", "currency1", "currency2", "item_name"],
        },
        annotations=_WRITES,
    )
    async def create_transaction(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        transaction = await coinpayments().create_transaction(arguments)
        timeout = transaction.get("timeout")
        return {
            "transaction_id": transaction.get("txn_id"),
            "payment_address": transaction.get("address"),
            "amount_to_pay": transaction.get("amount"),
            "confirms_needed": transaction.get("confirms_needed"),
            "timeout_minutes": timeout // 60 if isinstance(timeout, int) else None,
            "status_url": transaction.get("status_url"),
            "qr_code_url": transaction.get("qrcode_url"),
            "currency": arguments["currency2"],
            "item_name": arguments["item_name"],
            "provider": "CoinPayments",
        }

    @registry.tool(
        "coinpayments-get-transaction-info",
        title="Get Transaction Information",
        description="Get detailed information about a transaction by transaction ID",
        input_schema={"type": "object", "properties": _string_props("txid"), "required": ["txid"]},
        annotations=_READ_ONLY,
    )
    async def get_transaction_info(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        info = await coinpayments().get_transaction_info(arguments["txid"])
        status = info.get("status")
        return {
            "transaction_id": arguments["txid"],
            "time_created": _timestamp(info.get("time_created")),
            "time_expires": _timestamp(info.get("time_expires")),
            "status": status,
            "status_text": info.get("status_text"),
            "status_meaning": COINPAYMENTS_STATUS_MEANINGS.get(str(status), "Unknown status"),
            "type": info.get("type"),
            "coin": info.get("coin"),
            "amount_expected": info.get("amountf"),
            "amount_received": info.get("receivedf"),
            "confirmations_received": info.get("recv_confirms"),
            "payment_address": info.get("payment_address"),
            "provider": "CoinPayments",
        }

    @registry.tool(
        "coinpayments-verify-ipn",
        title="Verify IPN Signature",
        description="Verify a raw CoinPayments IPN form body against its HMAC header (HMAC-SHA512)",
        input_schema={
            "type": "object",
            "properties": _string_props("ipn_data", "hmac_signature"),
            "required": ["ipn_data", "hmac_signature"],
        },
        annotations=ToolAnnotations(read_only_hint=True),
    )
    async def coinpayments_verify_ipn(ctx: RequestContext, arguments: dict[str, Any]) -> CallToolResult:
        return _verification_result(
            Provider.COINPAYMENTS,
            arguments["ipn_data"],
            arguments["hmac_signature"],
            settings.coinpayments_ipn_secret,
            data_key="ipn_data",
        )

    # Coinbase Commerce

    @registry.tool(
        "coinbase-commerce-create-charge",
        title="Create Coinbase Commerce Charge",
        description="Create a fixed-price charge with a hosted checkout page",
        input_schema={
            "type": "object",
            "properties": _string_props(
                "name",
                "description",
                "amount",
                "currency",
                "order_id",
                "buyer_email",
                "buyer_name",
                "redirect_url",
                "cancel_url",
                "custom_data",
            ),
            "required": ["name", "description", "amount", "currency"],
        },
        annotations=_WRITES,
    )
    async def create_charge(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = coinbase()
        metadata: dict[str, Any] = {
            key: arguments[key] for key in ("order_id", "buyer_email", "buyer_name") if arguments.get(key)
        }
        if custom_data := arguments.get("custom_data"):
            try:
                parsed = json.loads(custom_data)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                metadata.update(parsed)
            else:
                metadata["custom_data"] = custom_data

        charge = await client.create_charge(
            {
                "name": arguments["name"],
                "description": arguments["description"],
                "pricing_type": "fixed_price",
                "local_price": {"amount": arguments["amount"], "currency": arguments["currency"]},
                "metadata": metadata,
                "redirect_url": arguments.get("redirect_url"),
                "cancel_url": arguments.get("cancel_url"),
            }
        )
        addresses = charge.get("addresses") or {}
        return {
            **_charge_summary(charge),
            "addresses": addresses,
            "supported_currencies": list(addresses),
            "metadata": charge.get("metadata"),
        }

    @registry.tool(
        "coinbase-commerce-get-charge",
        title="Get Coinbase Commerce Charge",
        description="Get the details and payment timeline of a charge",
        input_schema={"type": "object", "properties": _string_props("charge_id"), "required": ["charge_id"]},
        annotations=_READ_ONLY,
    )
    async def get_charge(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        charge = await coinbase().get_charge(arguments["charge_id"])
        return {
            **_charge_summary(charge),
            "timeline": charge.get("timeline") or [],
            "payments": charge.get("payments") or [],
        }

    @registry.tool(
        "coinbase-commerce-list-charges",
        title="List Coinbase Commerce Charges",
        description="List charges, newest first",
        input_schema={
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "minimum": 1, "maximum": 100},
                "starting_after": {"type": "string"},
            },
        },
        annotations=_READ_ONLY,
    )
    async def list_charges(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await coinbase().list_charges(
            limit=arguments.get("limit"), starting_after=arguments.get("starting_after")
        )
        charges = [_charge_summary(charge) for charge in result.get("data", [])]
        return {"charges": charges, "pagination": result.get("pagination"), "total_count": len(charges)}

    @registry.tool(
        "coinbase-commerce-cancel-charge",
        title="Cancel Coinbase Commerce Charge",
        description="Cancel a charge that has not been paid",
        input_schema={"type": "object", "properties": _string_props("charge_id"), "required": ["charge_id"]},
        annotations=ToolAnnotations(destructive_hint=True, open_world_hint=True),
    )
    async def cancel_charge(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        charge = await coinbase().cancel_charge(arguments["charge_id"])
        return {
            "charge_id": charge.get("id"),
            "charge_code": charge.get("code"),
            "status": _charge_status(charge),
            "cancelled_at": _now(),
        }

    @registry.tool(
        "coinbase-commerce-resolve-charge",
        title="Resolve Coinbase Commerce Charge",
        description="Resolve an unresolved charge by marking it as completed or cancelled",
        input_schema={
            "type": "object",
            "properties": {
                "charge_id": {"type": "string"},
                "resolution": {"type": "string", "enum": ["completed", "cancelled"]},
            },
            "required": ["charge_id", "resolution"],
        },
        annotations=_WRITES,
    )
    async def resolve_charge(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        charge = await coinbase().resolve_charge(arguments["charge_id"], arguments["resolution"])
        return {
            "charge_id": charge.get("id"),
            "charge_code": charge.get("code"),
            "resolution": arguments["resolution"],
            "status": _charge_status(charge),
            "resolved_at": _now(),
        }

    @registry.tool(
        "coinbase-commerce-verify-webhook",
        title="Verify Coinbase Commerce Webhook",
        description="Verify a raw Coinbase Commerce webhook body against X-CC-Webhook-Signature (HMAC-SHA256)",
        input_schema={
            "type": "object",
            "properties": _string_props("raw_body", "signature"),
            "required": ["raw_body", "signature"],
        },
        annotations=ToolAnnotations(read_only_hint=True),
    )
    async def coinbase_verify_webhook(ctx: RequestContext, arguments: dict[str, Any]) -> CallToolResult:
        return _verification_result(
            Provider.COINBASE_COMMERCE,
            arguments["raw_body"],
            arguments["signature"],
            settings.coinbase_commerce_webhook_secret,
        )

    # Comput3

    @registry.tool(
        "comput3-text-completion",
        title="AI Text Completion",
        description="Generate text completions using Comput3 AI",
        input_schema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string"},
                "max_tokens": {"type": "integer", "minimum": 1},
                "temperature": {"type": "number", "minimum": 0, "maximum": 2},
                "model": {"type": "string"},
            },
            "required": ["prompt"],
        },
        annotations=_READ_ONLY,
    )
    async def text_completion(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        response = await comput3().create_text_completion(
            arguments["prompt"],
            max_tokens=arguments.get("max_tokens"),
            temperature=arguments.get("temperature"),
            model=arguments.get("model"),
        )
        choices = response.get("choices") or [{}]
        return {
            "completion": choices[0].get("text", ""),
            "finish_reason": choices[0].get("finish_reason"),
            "usage": response.get("usage"),
            "id": response.get("id"),
        }

    job_timeout = settings.comput3_max_wait_seconds + settings.tool_timeout_seconds

    async def wait_for_job(ctx: RequestContext, client: Comput3Client, job_id: str) -> dict[str, Any]:
        polls = 0

        async def report(status: dict[str, Any]) -> None:
            nonlocal polls
            polls += 1
            progress = status.get("progress")
            await ctx.report_progress(
                progress if isinstance(progress, (int, float)) else polls,
                100 if isinstance(progress, (int, float)) else None,
                message=f"Job {job_id}: {status.get('status', 'unknown')}",
            )

        return await client.wait_for_job(
            job_id,
            max_wait=settings.comput3_max_wait_seconds,
            poll_interval=settings.comput3_poll_interval_seconds,
            on_poll=report,
        )

    async def generation_result(
        ctx: RequestContext, client: Comput3Client, job: dict[str, Any], *, wait: bool, **summary: Any
    ) -> dict[str, Any]:
        job_id = job.get("id")
        result = {"job_id": job_id, "status": job.get("status"), **summary}
        if wait and job_id and job.get("status") not in JOB_FINISHED_STATUSES:
            final = await wait_for_job(ctx, client, job_id)
            result.update(status=final.get("status"), result=final.get("result"), error=final.get("error"))
        return result

    @registry.tool(
        "comput3-image-generation",
        title="AI Image Generation",
        description="Generate images using Comput3 AI, optionally waiting for the job to finish",
        input_schema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string"},
                "width": {"type": "integer", "minimum": 1},
                "height": {"type": "integer", "minimum": 1},
                "steps": {"type": "integer", "minimum": 1},
                "guidance_scale": {"type": "number"},
                "model": {"type": "string"},
                "wait": {"type": "boolean"},
            },
            "required": ["prompt"],
        },
        annotations=_WRITES,
        timeout=job_timeout,
    )
    async def image_generation(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = comput3()
        job = await client.generate_image(
            arguments["prompt"],
            width=arguments.get("width"),
            height=arguments.get("height"),
            steps=arguments.get("steps"),
            guidance_scale=arguments.get("guidance_scale"),
            model=arguments.get("model"),
        )
        return await generation_result(
            ctx, client, job, wait=arguments.get("wait", False), images=job.get("images") or []
        )

    @registry.tool(
        "comput3-video-generation",
        title="AI Video Generation",
        description="Generate videos using Comput3 AI, optionally waiting for the job to finish",
        input_schema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string"},
                "duration": {"type": "number", "exclusiveMinimum": 0},
                "fps": {"type": "integer", "minimum": 1},
                "width": {"type": "integer", "minimum": 1},
                "height": {"type": "integer", "minimum": 1},
                "model": {"type": "string"},
                "wait": {"type": "boolean"},
            },
            "required": ["prompt"],
        },
        annotations=_WRITES,
        timeout=job_timeout,
    )
    async def video_generation(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = comput3()
        job = await client.generate_video(
            arguments["prompt"],
            duration=arguments.get("duration"),
            fps=arguments.get("fps"),
            width=arguments.get("width"),
            height=arguments.get("height"),
            model=arguments.get("model"),
        )
        return await generation_result(
            ctx,
            client,
            job,
            wait=arguments.get("wait", False),
            video_url=job.get("video_url"),
            progress=job.get("progress"),
        )

    @registry.tool(
        "comput3-job-status",
        title="Check Job Status",
        description="Check the status of a Comput3 AI job, optionally waiting for it to finish",
        input_schema={
            "type": "object",
            "properties": {"job_id": {"type": "string"}, "wait": {"type": "boolean"}},
            "required": ["job_id"],
        },
        annotations=_READ_ONLY,
        timeout=job_timeout,
    )
    async def job_status(ctx: RequestContext, arguments: dict[str, Any]) -> dict[str, Any]:
        client = comput3()
        if not arguments.get("wait"):
            return await client.get_job_status(arguments["job_id"])
        return await wait_for_job(ctx, client, arguments["job_id"])
