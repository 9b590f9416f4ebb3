import json
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from paygate.exceptions import ProviderAPIError, ToolError
from paygate.tools.providers import CoinbaseCommerceClient, CoinPaymentsClient, Comput3Client, NowPaymentsClient
from paygate.utilities.http import HttpClientFactory, create_http_client
from paygate.webhooks.signatures import Provider, verify

pytestmark = pytest.mark.anyio

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """Answers requests with a handler and keeps every request it saw."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def factory(self) -> HttpClientFactory:
        def factory(**kwargs: Any) -> httpx.AsyncClient:
            return create_http_client(transport=httpx.MockTransport(self), **kwargs)

        return factory

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def _json(payload: Any, status_code: int = 200) -> Handler:
    return lambda request: httpx.Response(status_code, json=payload)


async def test_nowpayments_production_and_sandbox_urls():
    recorder = Recorder(_json({"currencies": ["btc", "eth"]}))

    production = NowPaymentsClient("np-key", http_client_factory=recorder.factory)
    assert await production.get_currencies() == ["btc", "eth"]
    assert str(recorder.last.url) == "https://api.nowpayments.io/v1/currencies"
    assert recorder.last.headers["x-api-key"] == "np-key"
    assert production.environment == "production"

    sandbox = NowPaymentsClient("np-key", sandbox=True, http_client_factory=recorder.factory)
    await sandbox.get_currencies()
    assert str(recorder.last.url) == "https://api-sandbox.nowpayments.io/v1/currencies"
    assert sandbox.environment == "sandbox"


async def test_nowpayments_estimate_sends_query_params():
    recorder = Recorder(_json({"estimated_amount": "0.0004"}))
    client = NowPaymentsClient("np-key", http_client_factory=recorder.factory)

    await client.get_estimate(25, "usd", "btc")

    assert recorder.last.url.params["amount"] == "25"
    assert recorder.last.url.params["currency_from"] == "usd"
    assert recorder.last.url.params["currency_to"] == "btc"


async def test_nowpayments_invoice_drops_unset_fields():
    recorder = Recorder(_json({"id": "inv-1"}))
    client = NowPaymentsClient("np-key", http_client_factory=recorder.factory)

    await client.create_invoice({"price_amount": 10, "price_currency": "usd", "success_url": None})

    assert recorder.last.method == "POST"
    assert json.loads(recorder.last.content) == {"price_amount": 10, "price_currency": "usd"}


async def test_error_status_raises_provider_api_error():
    recorder = Recorder(lambda request: httpx.Response(401, text="bad api key"))
    client = NowPaymentsClient("wrong", http_client_factory=recorder.factory)

    with pytest.raises(ProviderAPIError) as exc_info:
        await client.get_payment_status("123")

    assert exc_info.value.status_code == 401
    assert str(exc_info.value) == "NowPayments API error: 401 Unauthorized - bad api key"
    assert isinstance(exc_info.value, ToolError)


async def test_coinbase_headers_and_charge_unwrapping():
    recorder = Recorder(_json({"data": {"id": "chg-1", "code": "ABC"}}))
    client = CoinbaseCommerceClient("cc-key", http_client_factory=recorder.factory)

    charge = await client.create_charge({"name": "Coffee", "redirect_url": None})

    assert charge == {"id": "chg-1", "code": "ABC"}
    assert str(recorder.last.url) == "https://api.commerce.coinbase.com/charges"
    assert recorder.last.headers["X-CC-Api-Key"] == "cc-key"
    assert recorder.last.headers["X-CC-Version"] == "2018-03-22"
    assert json.loads(recorder.last.content) == {"name": "Coffee"}


async def test_coinbase_list_charges_omits_unset_params():
    recorder = Recorder(_json({"data": [], "pagination": {"total": 0}}))
    client = CoinbaseCommerceClient("cc-key", http_client_factory=recorder.factory)

    result = await client.list_charges(limit=5)

    assert result == {"data": [], "pagination": {"total": 0}}
    assert dict(recorder.last.url.params) == {"limit": "5"}


async def test_coinbase_charge_actions():
    recorder = Recorder(_json({"data": {"id": "chg-1"}}))
    client = CoinbaseCommerceClient("cc-key", http_client_factory=recorder.factory)

    await client.cancel_charge("chg-1")
    assert recorder.last.url.path == "/charges/chg-1/cancel"

    await client.resolve_charge("chg-1", "completed")
    assert recorder.last.url.path == "/charges/chg-1/resolve"
    assert json.loads(recorder.last.content) == {"resolution": "completed"}


async def test_comput3_completion_defaults():
    recorder = Recorder(_json({"id": "cmpl-1", "choices": [{"text": "hi"}]}))
    client = Comput3Client("c3-key", base_url="https://c3.test/v1/", http_client_factory=recorder.factory)

    await client.create_text_completion("Say hi")

    assert str(recorder.last.url) == "https://c3.test/v1/completions"
    assert recorder.last.headers["Authorization"] == "Bearer c3-key"
    assert json.loads(recorder.last.content) == {
        "prompt": "Say hi",
        "max_tokens": 256,
        "temperature": 0.7,
        "model": "kimi-k2",
    }


async def test_comput3_wait_for_job_polls_until_finished():
    statuses = iter([{"status": "queued"}, {"status": "running", "progress": 50}, {"status": "completed"}])
    recorder = Recorder(lambda request: httpx.Response(200, json=next(statuses)))
    client = Comput3Client("c3-key", base_url="https://c3.test/v1", http_client_factory=recorder.factory)
    seen: list[dict[str, Any]] = []

    async def on_poll(status: dict[str, Any]) -> None:
        seen.append(status)

    result = await client.wait_for_job("job-1", max_wait=5, poll_interval=0, on_poll=on_poll)

    assert result == {"status": "completed"}
    assert [status["status"] for status in seen] == ["queued", "running"]
    assert len(recorder.requests) == 3
    assert recorder.last.url.path == "/v1/jobs/job-1"


async def test_comput3_wait_for_job_times_out():
    recorder = Recorder(_json({"status": "running"}))
    client = Comput3Client("c3-key", base_url="https://c3.test/v1", http_client_factory=recorder.factory)

    with pytest.raises(ToolError, match="Job job-2 timed out after 0.05 seconds"):
        await client.wait_for_job("job-2", max_wait=0.05, poll_interval=0.01)


async def test_coinpayments_call_is_a_signed_form_post():
    recorder = Recorder(_json({"error": "ok", "result": {"BTC": {"rate_btc": "1.0"}}}))
    client = CoinPaymentsClient("cp-public", "cp-private", http_client_factory=recorder.factory)

    rates = await client.get_rates(short=True)

    assert rates == {"BTC": {"rate_btc": "1.0"}}
    assert str(recorder.last.url) == "https://www.coinpayments.net/api.php"
    assert recorder.last.headers["Content-Type"] == "application/x-www-form-urlencoded"
    body = recorder.last.content
    assert dict(parse_qsl(body.decode())) == {
        "cmd": "rates",
        "short": "1",
        "version": "1",
        "key": "cp-public",
        "format": "json",
    }
    assert verify(Provider.COINPAYMENTS, body, recorder.last.headers["HMAC"], "cp-private")


async def test_coinpayments_error_answer_raises():
    client = CoinPaymentsClient(
        "cp-public", "cp-private", http_client_factory=Recorder(_json({"error": "Invalid API key"})).factory
    )

    with pytest.raises(ToolError, match="CoinPayments API error: Invalid API key"):
        await client.get_transaction_info("CPTX1")


async def test_coinpayments_empty_transaction_result_raises():
    client = CoinPaymentsClient(
        "cp-public", "cp-private", http_client_factory=Recorder(_json({"error": "ok", "result": {}})).factory
    )

    with pytest.raises(ToolError, match="No transaction result received"):
        await client.create_transaction({"amount": 1, "currency1": "USD", "currency2": "BTC", "item_name": "x"})


async def test_coinpayments_http_failure_raises_provider_api_error():
    client = CoinPaymentsClient(
        "cp-public", "cp-private", http_client_factory=Recorder(_json({}, status_code=503)).factory
    )

    with pytest.raises(ProviderAPIError) as exc_info:
        await client.get_rates()

    assert exc_info.value.status_code == 503


async def test_comput3_generation_defaults():
    recorder = Recorder(_json({"id": "job-1", "status": "pending"}))
    client = Comput3Client("c3-key", base_url="https://c3.test/v1", http_client_factory=recorder.factory)

    await client.generate_image("a logo")
    assert recorder.last.url.path == "/v1/images/generations"
    assert json.loads(recorder.last.content) == {
        "prompt": "a logo",
        "width": 512,
        "height": 512,
        "steps": 20,
        "guidance_scale": 7.5,
        "model": "kimi-k2",
    }

    await client.generate_video("a teaser", fps=30)
    assert recorder.last.url.path == "/v1/videos/generations"
    assert json.loads(recorder.last.content) == {
        "prompt": "a teaser",
        "duration": 3,
        "fps": 30,
        "width": 512,
        "height": 512,
        "model": "kimi-k2",
    }
