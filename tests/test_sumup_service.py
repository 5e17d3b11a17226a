import hashlib
import json

import httpx
import pytest

from payflow.config import Settings
from payflow.errors import ConfigurationError, ProviderError, ValidationError
from payflow.providers import IntentRequest, PaymentOutcome
from payflow.signatures import sign
from payflow.sumup_service import SumUpAdapter


def make_adapter(settings, handler):
    return SumUpAdapter(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))


def intent_request():
    return IntentRequest(
        tenant_id="tenant-1",
        order_id="order-1",
        amount_cents=1250,
        currency="chf",
        customer_email="guest@example.com",
        idempotency_key="payment:order-1",
    )


def test_missing_credentials_fail_at_construction():
    with pytest.raises(ConfigurationError):
        SumUpAdapter(Settings({"SUMUP_MERCHANT_CODE": "MC123"}))


def test_create_checkout(settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "chk_1", "hosted_checkout_url": "https://pay.sumup.test/chk_1"})

    result = make_adapter(settings, handler).create_intent(intent_request())

    assert result.provider_id == "chk_1"
    assert result.status == "pending"
    assert result.next_action.type == "app-switch"
    body = json.loads(seen[0].content)
    assert body["amount"] == 12.5
    assert body["currency"] == "CHF"
    assert body["merchant_code"] == "MC123"
    assert body["checkout_reference"] == hashlib.sha256(b"payment:order-1").hexdigest()[:32]
    assert seen[0].headers["Authorization"] == "Bearer sumup-token"
    assert str(seen[0].url) == "https://sumup.test/v0.1/checkouts"


def test_duplicate_reference_returns_existing_checkout(settings):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(409, json={"error_code": "DUPLICATED_CHECKOUT"})
        assert request.url.params["checkout_reference"]
        return httpx.Response(200, json=[{"id": "chk_existing", "checkout_url": "https://pay.sumup.test/x"}])

    result = make_adapter(settings, handler).create_intent(intent_request())

    assert result.provider_id == "chk_existing"


def test_provider_failure_raises_provider_error(settings):
    adapter = make_adapter(settings, lambda request: httpx.Response(500, text="upstream down"))

    with pytest.raises(ProviderError) as excinfo:
        adapter.create_intent(intent_request())

    assert excinfo.value.provider == "sumup"
    assert excinfo.value.raw == "upstream down"
    assert excinfo.value.upstream_status == 500


def test_get_checkout_normalises_status_and_amount(settings):
    def handler(request):
        return httpx.Response(200, json={"id": "chk_1", "status": "PAID", "amount": 45.1, "currency": "CHF"})

    state = make_adapter(settings, handler).get_checkout("chk_1")

    assert (state.status, state.amount_cents, state.currency) == ("paid", 4510, "CHF")


def test_refund_uses_transaction_code(settings, mocker):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    transaction = mocker.Mock(id="tx-1", provider_payment_id="chk_1", details={"extras": {"transaction_code": "TX42"}})
    result = make_adapter(settings, handler).refund(transaction, 500, None)

    assert seen[0].url.path == "/v0.1/me/refund/TX42"
    assert json.loads(seen[0].content) == {"amount": 5.0}
    assert result.status == "succeeded"


def test_webhook_signature(settings):
    adapter = make_adapter(settings, lambda request: httpx.Response(200))
    body = b'{"id":"chk_1","status":"PAID"}'

    assert adapter.verify_webhook_signature(body, sign(body, "sumup-webhook-secret"))
    assert not adapter.verify_webhook_signature(body, sign(body, "other"))
    assert not adapter.verify_webhook_signature(body, None)


def test_parse_event(settings):
    adapter = make_adapter(settings, lambda request: httpx.Response(200))

    paid = adapter.parse_event(b'{"id":"chk_1","status":"PAID","amount":12.5,"currency":"CHF"}')
    failed = adapter.parse_event(b'{"id":"chk_1","status":"FAILED"}')

    assert paid.outcome is PaymentOutcome.SUCCEEDED
    assert paid.amount_cents == 1250
    assert failed.outcome is PaymentOutcome.PENDING
    assert paid.event_id != failed.event_id
    with pytest.raises(ValidationError):
        adapter.parse_event(b"not json")
