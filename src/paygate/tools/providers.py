"""Thin httpx clients for the payment and compute providers behind the tools."""

from __future__ import annotations

import logging
from typing import Any, ClassVar

import anyio

from paygate.exceptions import ProviderAPIError, ToolError
from paygate.utilities.http import HttpClientFactory, create_http_client
from paygate.webhooks.signatures import Provider, compute_signature, encode_form_body

logger = logging.getLogger(__name__)

NOWPAYMENTS_API_BASE = "https://api.nowpayments.io/v1"
NOWPAYMENTS_SANDBOX_BASE = "https://api-sandbox.nowpayments.io/v1"
COINBASE_COMMERCE_API_BASE = "https://api.commerce.coinbase.com"
COINBASE_COMMERCE_API_VERSION = "2018-03-22"
COINPAYMENTS_API_BASE = "https://www.coinpayments.net"

JOB_FINISHED_STATUSES = frozenset({"completed", "failed"})


class ProviderClient:
    """JSON-over-HTTP client for one provider.

    A fresh ``httpx.AsyncClient`` is opened per call so that a client can be
    shared by concurrent tool invocations without sharing connections.
    Non-2xx answers raise ProviderAPIError; no call is retried.
    """

    provider: ClassVar[str]

    def __init__(
        self,
        *,
        base_url: str,
        headers: dict[str, str],
        http_client_factory: HttpClientFactory = create_http_client,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", **headers}
        self._http_client_factory = http_client_factory

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        if params:
            params = {key: value for key, value in params.items() if value is not None}
        async with self._http_client_factory(base_url=self.base_url, headers=self._headers) as client:
            response = await client.request(method, path, params=params or None, json=json)
        if response.is_error:
            logger.warning("%s %s %s -> %s", self.provider, method, path, response.status_code)
            raise ProviderAPIError(self.provider, response.status_code, response.reason_phrase, response.text)
        return response.json()


class NowPaymentsClient(ProviderClient):
    provider = "NowPayments"

    def __init__(
        self, api_key: str, *, sandbox: bool = False, http_client_factory: HttpClientFactory = create_http_client
    ) -> None:
        super().__init__(
            base_url=NOWPAYMENTS_SANDBOX_BASE if sandbox else NOWPAYMENTS_API_BASE,
            headers={"x-api-key": api_key},
            http_client_factory=http_client_factory,
        )
        self.sandbox = sandbox

    @property
    def environment(self) -> str:
        return "sandbox" if self.sandbox else "production"

    async def get_currencies(self) -> list[str]:
        data = await self.request("GET", "/currencies")
        return data.get("currencies", [])

    async def get_estimate(self, amount: float, currency_from: str, currency_to: str) -> dict[str, Any]:
        return await self.request(
            "GET",
            "/estimate",
            params={"amount": amount, "currency_from": currency_from, "currency_to": currency_to},
        )

    async def create_invoice(self, invoice: dict[str, Any]) -> dict[str, Any]:
        return await self.request("POST", "/invoice", json={k: v for k, v in invoice.items() if v is not None})

    async def get_payment_status(self, payment_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/payment/{payment_id}")


class CoinbaseCommerceClient(ProviderClient):
    provider = "Coinbase Commerce"

    def __init__(self, api_key: str, *, http_client_factory: HttpClientFactory = create_http_client) -> None:
        super().__init__(
            base_url=COINBASE_COMMERCE_API_BASE,
            headers={"X-CC-Api-Key": api_key, "X-CC-Version": COINBASE_COMMERCE_API_VERSION},
            http_client_factory=http_client_factory,
        )

    async def create_charge(self, charge: dict[str, Any]) -> dict[str, Any]:
        result = await self.request("POST", "/charges", json={k: v for k, v in charge.items() if v is not None})
        return result["data"]

    async def get_charge(self, charge_id: str) -> dict[str, Any]:
        result = await self.request("GET", f"/charges/{charge_id}")
        return result["data"]

    async def list_charges(self, *, limit: int | None = None, starting_after: str | None = None) -> dict[str, Any]:
        return await self.request("GET", "/charges", params={"limit": limit, "starting_after": starting_after})

    async def cancel_charge(self, charge_id: str) -> dict[str, Any]:
        result = await self.request("POST", f"/charges/{charge_id}/cancel")
        return result["data"]

    async def resolve_charge(self, charge_id: str, resolution: str) -> dict[str, Any]:
        result = await self.request("POST", f"/charges/{charge_id}/resolve", json={"resolution": resolution})
        return result["data"]


class CoinPaymentsClient(ProviderClient):
    """CoinPayments' v1 API: a single form-encoded endpoint, selected by ``cmd``.

    Each body is signed with HMAC-SHA512 under the private key and sent in the
    ``HMAC`` header, the same construction CoinPayments uses for its IPNs.
    A 200 answer whose ``error`` is not ``"ok"`` is a failure too.
    """

    provider = "CoinPayments"

    def __init__(
        self, public_key: str, private_key: str, *, http_client_factory: HttpClientFactory = create_http_client
    ) -> None:
        super().__init__(base_url=COINPAYMENTS_API_BASE, headers={}, http_client_factory=http_client_factory)
        self._public_key = public_key
        self._private_key = private_key

    async def call(self, cmd: str, **fields: Any) -> Any:
        body = encode_form_body(
            {
                "cmd": cmd,
                **{key: value for key, value in fields.items() if value is not None},
                "version": "1",
                "key": self._public_key,
                "format": "json",
            }
        )
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "HMAC": compute_signature(Provider.COINPAYMENTS, body, self._private_key),
        }
        async with self._http_client_factory(base_url=self.base_url, headers=headers) as client:
            response = await client.post("/api.php", content=body)
        if response.is_error:
            logger.warning("%s %s -> %s", self.provider, cmd, response.status_code)
            raise ProviderAPIError(self.provider, response.status_code, response.reason_phrase, response.text)
        data = response.json()
        error = data.get("error", "ok")
        if error != "ok":
            raise ToolError(f"{self.provider} API error: {error}")
        return data.get("result")

    async def get_rates(self, *, short: bool = False) -> dict[str, Any]:
        return await self.call("rates", short=int(short)) or {}

    async def create_transaction(self, transaction: dict[str, Any]) -> dict[str, Any]:
        result = await self.call("create_transaction", **transaction)
        if not result:
            raise ToolError("No transaction result received")
        return result

    async def get_transaction_info(self, txid: str) -> dict[str, Any]:
        result = await self.call("get_tx_info", txid=txid)
        if not result:
            raise ToolError("No transaction information received")
        return result


class Comput3Client(ProviderClient):
    provider = "Comput3"

    def __init__(
        self, api_key: str, *, base_url: str, http_client_factory: HttpClientFactory = create_http_client
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            http_client_factory=http_client_factory,
        )

    async def create_text_completion(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/completions",
            json={
                "prompt": prompt,
                "max_tokens": max_tokens or 256,
                "temperature": 0.7 if temperature is None else temperature,
                "model": model or "kimi-k2",
            },
        )

    async def generate_image(
        self,
        prompt: str,
        *,
        width: int | None = None,
        height: int | None = None,
        steps: int | None = None,
        guidance_scale: float | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/images/generations",
            json={
                "prompt": prompt,
                "width": width or 512,
                "height": height or 512,
                "steps": steps or 20,
                "guidance_scale": guidance_scale or 7.5,
                "model": model or "kimi-k2",
            },
        )

    async def generate_video(
        self,
        prompt: str,
        *,
        duration: float | None = None,
        fps: int | None = None,
        width: int | None = None,
        height: int | None = None,
        model: str | None = None,
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            "/videos/generations",
            json={
                "prompt": prompt,
                "duration": duration or 3,
                "fps": fps or 24,
                "width": width or 512,
                "height": height or 512,
                "model": model or "kimi-k2",
            },
        )

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        return await self.request("GET", f"/jobs/{job_id}")

    async def wait_for_job(
        self,
        job_id: str,
        *,
        max_wait: float,
        poll_interval: float,
        on_poll: Any = None,
    ) -> dict[str, Any]:
        """Poll until the job completes or fails.

        ``on_poll`` is awaited with each intermediate status.

        Raises:
            ToolError: if the job is still running after ``max_wait`` seconds.
        """
        try:
            with anyio.fail_after(max_wait):
                while True:
                    status = await self.get_job_status(job_id)
                    if status.get("status") in JOB_FINISHED_STATUSES:
                        return status
                    if on_poll is not None:
                        await on_poll(status)
                    await anyio.sleep(poll_interval)
        except TimeoutError:
            raise ToolError(f"Job {job_id} timed out after {max_wait:g} seconds") from None
