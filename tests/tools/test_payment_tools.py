import json
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from paygate.context import RequestContext
from paygate.settings import Settings
from paygate.tools.payments import register_payment_tools
from paygate.tools.registry import ToolRegistry
from paygate.transport.sink import NullSink
from paygate.types.json_rpc import JSONRPCMessage, JSONRPCNotification, JSONRPCResponse
from paygate.utilities.http import create_http_client
from paygate.webhooks.signatures import Provider, compute_signature, encode_form_body

pytestmark = pytest.mark.anyio

API_KEYS = {
    "nowpayments_api_key": "np-key",
    "nowpayments_ipn_secret": "np-ipn",
    "coinpayments_public_key": "cp-public",
    "coinpayments_private_key": "cp-private",
    "coinpayments_ipn_secret": "cp-ipn",
    "coinbase_commerce_api_key": "cc-key",
    "coinbase_commerce_webhook_secret": "cc-whsec",
    "comput3_api_key": "c3-key",
    "comput3_base_url": "https://c3.test/v1",
    "comput3_poll_interval_seconds": 0.01,
}


class FakeProviders:
    """Routes provider API calls to canned responses by (method, path)."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get((request.method, request.url.path))
        if answer is None:
            return httpx.Response(404, text="not found")
        if isinstance(answer, httpx.Response):
            return answer
        if callable(answer):
            return httpx.Response(200, json=answer())
        return httpx.Response(200, json=answer)

    def factory(self, **kwargs: Any) -> httpx.AsyncClient:
        return create_http_client(transport=httpx.MockTransport(self), **kwargs)


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[JSONRPCMessage] = []

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        self.messages.append(message)

    async def send_result(self, response: JSONRPCResponse) -> None:
        pass

    async def close(self) -> None:
        pass


def _ctx(sink: Any = None, progress_token: str | int | None = None) -> RequestContext:
    return RequestContext(
        server_state=None,
        session=None,
        request_id=1,
        _sink=sink or NullSink(),
        progress_token=progress_token,
    )


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


def _registry(providers: FakeProviders, **settings: Any) -> ToolRegistry:
    registry = ToolRegistry(timeout=5)
    register_payment_tools(registry, Settings(_env_file=None, **settings), http_client_factory=providers.factory)  # type: ignore[call-arg]
    return registry


def test_all_tools_are_registered(providers: FakeProviders):
    assert _registry(providers).names() == [
        "nowpayments-get-currencies",
        "nowpayments-get-estimate",
        "nowpayments-create-invoice",
        "nowpayments-get-payment-status",
        "nowpayments-verify-webhook",
        "coinpayments-get-rates",
        "coinpayments-create-transaction",
        "coinpayments-get-transaction-info",
        "coinpayments-verify-ipn",
        "coinbase-commerce-create-charge",
        "coinbase-commerce-get-charge",
        "coinbase-commerce-list-charges",
        "coinbase-commerce-cancel-charge",
        "coinbase-commerce-resolve-charge",
        "coinbase-commerce-verify-webhook",
        "comput3-text-completion",
        "comput3-image-generation",
        "comput3-video-generation",
        "comput3-job-status",
    ]


def test_job_tools_timeout_covers_the_wait(providers: FakeProviders):
    registry = _registry(providers, comput3_max_wait_seconds=120, tool_timeout_seconds=30)

    for name in ("comput3-image-generation", "comput3-video-generation", "comput3-job-status"):
        assert registry.get(name).timeout == 150  # type: ignore[union-attr]


@pytest.mark.parametrize(
    ("tool", "arguments", "variable"),
    [
        ("nowpayments-get-currencies", {}, "NOWPAYMENTS_API_KEY"),
        ("coinpayments-get-rates", {}, "COINPAYMENTS_PUBLIC_KEY"),
        ("coinbase-commerce-get-charge", {"charge_id": "chg-1"}, "COINBASE_COMMERCE_API_KEY"),
        ("comput3-text-completion", {"prompt": "hi"}, "COMPUT3_API_KEY"),
    ],
)
async def test_missing_api_key_is_an_error_result(providers: FakeProviders, tool: str, arguments: dict, variable: str):
    result = await _registry(providers).call(_ctx(), tool, arguments)

    assert result.is_error
    assert result.content[0].text == f"Error executing tool {tool}: {variable} is not set"
    assert providers.requests == []


async def test_get_currencies(providers: FakeProviders):
    providers.routes["GET", "/v1/currencies"] = {"currencies": ["btc", "eth", "usdc"]}

    result = await _registry(providers, **API_KEYS).call(_ctx(), "nowpayments-get-currencies", {})

    assert result.structured_content == {
        "currencies": ["btc", "eth", "usdc"],
        "environment": "production",
        "total_currencies": 3,
    }


async def test_sandbox_setting_switches_environment(providers: FakeProviders):
    providers.routes["GET", "/v1/currencies"] = {"currencies": []}

    result = await _registry(providers, **API_KEYS, nowpayments_sandbox=True).call(
        _ctx(), "nowpayments-get-currencies", {}
    )

    assert result.structured_content["environment"] == "sandbox"  # type: ignore[index]
    assert providers.requests[0].url.host == "api-sandbox.nowpayments.io"


async def test_create_invoice(providers: FakeProviders):
    providers.routes["POST", "/v1/invoice"] = {
        "id": "4522625843",
        "invoice_url": "https://nowpayments.io/payment/?iid=4522625843",
        "price_amount": "25",
        "price_currency": "usd",
        "order_id": "order-1",
        "order_description": "Gig #1",
        "created_at": "2024-05-01T00:00:00.000Z",
    }
    arguments = {"price_amount": 25, "price_currency": "usd", "order_id": "order-1", "order_description": "Gig #1"}

    result = await _registry(providers, **API_KEYS).call(_ctx(), "nowpayments-create-invoice", arguments)

    assert not result.is_error
    assert result.structured_content["invoice_id"] == "4522625843"  # type: ignore[index]
    assert result.structured_content["invoice_url"] == "https://nowpayments.io/payment/?iid=4522625843"  # type: ignore[index]
    assert json.loads(providers.requests[0].content) == arguments


async def test_create_invoice_requires_order_fields(providers: FakeProviders):
    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "nowpayments-create-invoice", {"price_amount": 25, "price_currency": "usd"}
    )

    assert result.is_error
    assert result.content[0].text.startswith("Input validation error:")
    assert providers.requests == []


async def test_payment_status_explains_the_status(providers: FakeProviders):
    providers.routes["GET", "/v1/payment/5077125051"] = {"payment_id": 5077125051, "payment_status": "confirming"}

    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "nowpayments-get-payment-status", {"payment_id": "5077125051"}
    )

    assert result.structured_content == {
        "payment_id": 5077125051,
        "payment_status": "confirming",
        "environment": "production",
        "status_meaning": "Payment received, waiting for blockchain confirmations",
    }


async def test_provider_failure_is_an_error_result(providers: FakeProviders):
    providers.routes["GET", "/v1/estimate"] = httpx.Response(500, text="upstream down")

    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "nowpayments-get-estimate", {"amount": 10, "currency_from": "usd", "currency_to": "btc"}
    )

    assert result.is_error
    assert result.content[0].text == (
        "Error executing tool nowpayments-get-estimate: NowPayments API error: 500 Internal Server Error - upstream down"
    )


async def test_create_charge_builds_metadata(providers: FakeProviders):
    providers.routes["POST", "/charges"] = {
        "data": {
            "id": "chg-1",
            "code": "ABCD1234",
            "name": "Logo design",
            "pricing": {"local": {"amount": "50.00", "currency": "USD"}},
            "addresses": {"bitcoin": "bc1q...", "ethereum": "0xabc"},
            "timeline": [{"status": "NEW"}],
            "hosted_url": "https://commerce.coinbase.com/charges/ABCD1234",
            "metadata": {"order_id": "o-9", "tier": "gold"},
        }
    }
    arguments = {
        "name": "Logo design",
        "description": "A logo",
        "amount": "50.00",
        "currency": "USD",
        "order_id": "o-9",
        "custom_data": '{"tier": "gold"}',
    }

    result = await _registry(providers, **API_KEYS).call(_ctx(), "coinbase-commerce-create-charge", arguments)

    sent = json.loads(providers.requests[0].content)
    assert sent == {
        "name": "Logo design",
        "description": "A logo",
        "pricing_type": "fixed_price",
        "local_price": {"amount": "50.00", "currency": "USD"},
        "metadata": {"order_id": "o-9", "tier": "gold"},
    }
    summary = result.structured_content
    assert summary is not None
    assert summary["charge_code"] == "ABCD1234"
    assert summary["amount"] == "50.00"
    assert summary["status"] == "NEW"
    assert summary["supported_currencies"] == ["bitcoin", "ethereum"]


async def test_list_charges(providers: FakeProviders):
    providers.routes["GET", "/charges"] = {
        "data": [{"id": "chg-1", "timeline": [{"status": "COMPLETED"}]}, {"id": "chg-2", "timeline": []}],
        "pagination": {"cursor_range": ["chg-1", "chg-2"]},
    }

    result = await _registry(providers, **API_KEYS).call(_ctx(), "coinbase-commerce-list-charges", {"limit": 2})

    summary = result.structured_content
    assert summary is not None
    assert summary["total_count"] == 2
    assert [charge["status"] for charge in summary["charges"]] == ["COMPLETED", "unknown"]
    assert providers.requests[0].url.params["limit"] == "2"


async def test_list_charges_limit_is_bounded(providers: FakeProviders):
    result = await _registry(providers, **API_KEYS).call(_ctx(), "coinbase-commerce-list-charges", {"limit": 500})

    assert result.is_error


async def test_resolve_charge(providers: FakeProviders):
    providers.routes["POST", "/charges/chg-1/resolve"] = {
        "data": {"id": "chg-1", "code": "ABCD", "timeline": [{"status": "UNRESOLVED"}, {"status": "RESOLVED"}]}
    }

    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "coinbase-commerce-resolve-charge", {"charge_id": "chg-1", "resolution": "completed"}
    )

    summary = result.structured_content
    assert summary is not None
    assert summary["status"] == "RESOLVED"
    assert summary["resolution"] == "completed"
    assert "resolved_at" in summary


@pytest.mark.parametrize(
    ("tool", "provider", "secret", "body_key", "method"),
    [
        ("nowpayments-verify-webhook", Provider.NOWPAYMENTS, "np-ipn", "webhook_body", "HMAC-SHA512"),
        ("coinbase-commerce-verify-webhook", Provider.COINBASE_COMMERCE, "cc-whsec", "raw_body", "HMAC-SHA256"),
    ],
)
async def test_verify_webhook_tools(
    providers: FakeProviders, tool: str, provider: Provider, secret: str, body_key: str, method: str
):
    registry = _registry(providers, **API_KEYS)
    body = '{"payment_status": "finished", "payment_id": 1}'
    signature = compute_signature(provider, body, secret)

    valid = await registry.call(_ctx(), tool, {body_key: body, "signature": signature})
    invalid = await registry.call(_ctx(), tool, {body_key: body, "signature": "0" * len(signature)})

    report = json.loads(valid.content[0].text)
    assert report == {
        "signature_valid": True,
        "webhook_data": {"payment_status": "finished", "payment_id": 1},
        "verification_method": method,
        "provider": provider.value,
    }
    assert json.loads(invalid.content[0].text)["signature_valid"] is False


async def test_verify_webhook_without_secret_is_an_error(providers: FakeProviders):
    result = await _registry(providers).call(
        _ctx(), "nowpayments-verify-webhook", {"webhook_body": "{}", "signature": "abc"}
    )

    assert result.is_error
    assert result.content[0].text == "Error: no webhook secret configured for nowpayments"


async def test_text_completion(providers: FakeProviders):
    providers.routes["POST", "/v1/completions"] = {
        "id": "cmpl-1",
        "choices": [{"text": "Hello there", "finish_reason": "stop"}],
        "usage": {"total_tokens": 5},
    }

    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "comput3-text-completion", {"prompt": "Say hello", "max_tokens": 16}
    )

    assert result.structured_content == {
        "completion": "Hello there",
        "finish_reason": "stop",
        "usage": {"total_tokens": 5},
        "id": "cmpl-1",
    }
    assert json.loads(providers.requests[0].content)["max_tokens"] == 16


async def test_job_status_without_wait_is_a_single_lookup(providers: FakeProviders):
    providers.routes["GET", "/v1/jobs/job-1"] = {"id": "job-1", "status": "running"}

    result = await _registry(providers, **API_KEYS).call(_ctx(), "comput3-job-status", {"job_id": "job-1"})

    assert result.structured_content == {"id": "job-1", "status": "running"}
    assert len(providers.requests) == 1


async def test_job_status_wait_reports_progress(providers: FakeProviders):
    statuses = iter(
        [
            {"id": "job-1", "status": "running", "progress": 40},
            {"id": "job-1", "status": "running", "progress": 80},
            {"id": "job-1", "status": "completed", "result": "ok"},
        ]
    )
    providers.routes["GET", "/v1/jobs/job-1"] = lambda: next(statuses)
    sink = RecordingSink()

    result = await _registry(providers, **API_KEYS).call(
        _ctx(sink, progress_token="job-progress"), "comput3-job-status", {"job_id": "job-1", "wait": True}
    )

    assert result.structured_content == {"id": "job-1", "status": "completed", "result": "ok"}
    notifications = [m for m in sink.messages if isinstance(m, JSONRPCNotification)]
    assert [n.params for n in notifications] == [
        {"progressToken": "job-progress", "progress": 40, "total": 100, "message": "Job job-1: running"},
        {"progressToken": "job-progress", "progress": 80, "total": 100, "message": "Job job-1: running"},
    ]


async def test_job_status_wait_times_out(providers: FakeProviders):
    providers.routes["GET", "/v1/jobs/job-2"] = {"id": "job-2", "status": "running"}

    result = await _registry(providers, **API_KEYS, comput3_max_wait_seconds=0.05).call(
        _ctx(), "comput3-job-status", {"job_id": "job-2", "wait": True}
    )

    assert result.is_error
    assert result.content[0].text == "Error executing tool comput3-job-status: Job job-2 timed out after 0.05 seconds"


async def test_coinpayments_create_transaction_signs_the_form_body(providers: FakeProviders):
    providers.routes["POST", "/api.php"] = {
        "error": "ok",
        "result": {
            "amount": "0.00120000",
            "address": "bc1qpayaddress",
            "txn_id": "CPTX1",
            "confirms_needed": "2",
            "timeout": 5400,
            "status_url": "https://www.coinpayments.net/index.php?cmd=status&id=CPTX1",
            "qrcode_url": "https://www.coinpayments.net/qrgen.php?id=CPTX1",
        },
    }
    arguments = {"amount": 25, "currency1": "USD", "currency2": "BTC", "item_name": "Logo design", "invoice": "o-7"}

    result = await _registry(providers, **API_KEYS).call(_ctx(), "coinpayments-create-transaction", arguments)

    summary = result.structured_content
    assert summary is not None
    assert summary["transaction_id"] == "CPTX1"
    assert summary["payment_address"] == "bc1qpayaddress"
    assert summary["timeout_minutes"] == 90
    assert summary["currency"] == "BTC"
    request = providers.requests[0]
    body = request.content.decode()
    assert request.url.host == "www.coinpayments.net"
    assert dict(parse_qsl(body)) == {
        "cmd": "create_transaction",
        "amount": "25",
        "currency1": "USD",
        "currency2": "BTC",
        "item_name": "Logo design",
        "invoice": "o-7",
        "version": "1",
        "key": "cp-public",
        "format": "json",
    }
    assert request.headers["HMAC"] == compute_signature(Provider.COINPAYMENTS, body, "cp-private")


async def test_coinpayments_error_field_is_an_error_result(providers: FakeProviders):
    providers.routes["POST", "/api.php"] = {"error": "Invalid command!", "result": []}

    result = await _registry(providers, **API_KEYS).call(_ctx(), "coinpayments-get-rates", {"short": True})

    assert result.is_error
    assert result.content[0].text == (
        "Error executing tool coinpayments-get-rates: CoinPayments API error: Invalid command!"
    )
    assert dict(parse_qsl(providers.requests[0].content.decode()))["short"] == "1"


async def test_coinpayments_transaction_info_explains_the_status(providers: FakeProviders):
    providers.routes["POST", "/api.php"] = {
        "error": "ok",
        "result": {
            "time_created": 1714521600,
            "time_expires": 1714525200,
            "status": 1,
            "status_text": "Funds received and confirmed, sending to you shortly...",
            "type": "coins",
            "coin": "BTC",
            "amountf": "0.00120000",
            "receivedf": "0.00120000",
            "recv_confirms": 2,
            "payment_address": "bc1qpayaddress",
        },
    }

    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "coinpayments-get-transaction-info", {"txid": "CPTX1"}
    )

    summary = result.structured_content
    assert summary is not None
    assert summary["time_created"] == "2024-05-01T00:00:00+00:00"
    assert summary["time_expires"] == "2024-05-01T01:00:00+00:00"
    assert summary["status_meaning"] == "Coin reception from the buyer confirmed"
    assert summary["confirmations_received"] == 2


async def test_coinpayments_verify_ipn(providers: FakeProviders):
    registry = _registry(providers, **API_KEYS)
    body = encode_form_body({"ipn_type": "api", "txn_id": "CPTX1", "status": "100", "item_name": "Logo design"})
    signature = compute_signature(Provider.COINPAYMENTS, body, "cp-ipn")

    valid = await registry.call(_ctx(), "coinpayments-verify-ipn", {"ipn_data": body, "hmac_signature": signature})
    tampered = body.replace("status=100", "status=2")
    forged = await registry.call(_ctx(), "coinpayments-verify-ipn", {"ipn_data": tampered, "hmac_signature": signature})

    assert json.loads(valid.content[0].text) == {
        "signature_valid": True,
        "ipn_data": {"ipn_type": "api", "txn_id": "CPTX1", "status": "100", "item_name": "Logo design"},
        "verification_method": "HMAC-SHA512",
        "provider": "coinpayments",
    }
    assert json.loads(forged.content[0].text)["signature_valid"] is False
    assert providers.requests == []


async def test_image_generation_returns_a_finished_job_without_polling(providers: FakeProviders):
    images = [{"url": "https://c3.test/img-1.png", "width": 512, "height": 512}]
    providers.routes["POST", "/v1/images/generations"] = {"id": "img-1", "status": "completed", "images": images}

    result = await _registry(providers, **API_KEYS).call(
        _ctx(), "comput3-image-generation", {"prompt": "a logo", "wait": True}
    )

    assert result.structured_content == {"job_id": "img-1", "status": "completed", "images": images}
    assert len(providers.requests) == 1
    assert json.loads(providers.requests[0].content) == {
        "prompt": "a logo",
        "width": 512,
        "height": 512,
        "steps": 20,
        "guidance_scale": 7.5,
        "model": "kimi-k2",
    }


async def test_video_generation_waits_for_the_job(providers: FakeProviders):
    providers.routes["POST", "/v1/videos/generations"] = {"id": "vid-1", "status": "pending", "progress": 0}
    statuses = iter(
        [
            {"id": "vid-1", "status": "processing", "progress": 50},
            {"id": "vid-1", "status": "completed", "result": {"video_url": "https://c3.test/vid-1.mp4"}},
        ]
    )
    providers.routes["GET", "/v1/jobs/vid-1"] = lambda: next(statuses)
    sink = RecordingSink()

    arguments = {"prompt": "a teaser", "duration": 5, "wait": True}

    result = await _registry(providers, **API_KEYS).call(
        _ctx(sink, progress_token="video"), "comput3-video-generation", arguments
    )

    assert result.structured_content == {
        "job_id": "vid-1",
        "status": "completed",
        "video_url": None,
        "progress": 0,
        "result": {"video_url": "https://c3.test/vid-1.mp4"},
        "error": None,
    }
    assert json.loads(providers.requests[0].content)["duration"] == 5
    notifications = [m for m in sink.messages if isinstance(m, JSONRPCNotification)]
    assert [n.params for n in notifications] == [
        {"progressToken": "video", "progress": 50, "total": 100, "message": "Job vid-1: processing"}
    ]
