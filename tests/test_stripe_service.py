import json

import pytest
import stripe

from payflow.config import Settings
from payflow.errors import ConfigurationError, ProviderError
from payflow.providers import IntentRequest, PaymentOutcome
from payflow.schemas import TransactionMetadata
from payflow.stripe_service import StripeAdapter


@pytest.fixture
def adapter(settings):
    return StripeAdapter(settings)


def intent_request(**overrides):
    values = dict(
        tenant_id="tenant-1",
        order_id="order-1",
        amount_cents=2500,
        currency="CHF",
        customer_email="guest@example.com",
        idempotency_key="payment:order-1",
        metadata=TransactionMetadata(item_name="Spa", extras={"guests": 2}),
    )
    values.update(overrides)
    return IntentRequest(**values)


def test_missing_secret_key_fails_at_construction():
    with pytest.raises(ConfigurationError):
        StripeAdapter(Settings({}))


def test_create_payment_intent(adapter, mocker):
    mock_intent = mocker.Mock()
    mock_intent.id = "pi_123"
    mock_intent.status = "requires_action"
    mock_intent.client_secret = "secret_123"
    mock_intent.next_action = {"type": "redirect_to_url", "redirect_to_url": {"url": "https://3ds.test"}}
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_intent)

    result = adapter.create_intent(intent_request())

    assert result.provider_id == "pi_123"
    assert result.client_secret == "secret_123"
    assert result.next_action.type == "redirect"
    assert result.next_action.url == "https://3ds.test"
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 2500
    assert kwargs["currency"] == "chf"
    assert kwargs["idempotency_key"] == "payment:order-1"
    assert kwargs["metadata"] == {"order_id": "order-1", "tenant_id": "tenant-1", "item_name": "Spa", "guests": "2"}


def test_create_checkout_session(adapter, mocker):
    mock_session = mocker.Mock()
    mock_session.id = "cs_123"
    mock_session.payment_intent = None
    mock_session.url = "https://checkout.stripe.test/cs_123"
    create = mocker.patch("stripe.checkout.Session.create", return_value=mock_session)

    result = adapter.create_intent(intent_request(mode="checkout_session", locale="de-CH"))

    assert result.provider_id == "cs_123"
    assert result.checkout_url == "https://checkout.stripe.test/cs_123"
    assert result.next_action.type == "redirect"
    kwargs = create.call_args.kwargs
    assert kwargs["success_url"] == "https://shop.test/success"
    assert kwargs["locale"] == "de"
    assert kwargs["line_items"][0]["price_data"]["product_data"]["name"] == "Spa"


def test_checkout_without_redirect_urls_is_a_configuration_error(mocker):
    adapter = StripeAdapter(Settings({"STRIPE_SECRET_KEY": "sk_test"}))
    create = mocker.patch("stripe.checkout.Session.create")

    with pytest.raises(ConfigurationError):
        adapter.create_intent(intent_request(mode="checkout_session"))
    create.assert_not_called()


def test_stripe_errors_become_provider_errors(adapter, mocker):
    mocker.patch("stripe.PaymentIntent.create",
                 side_effect=stripe.StripeError("Your card was declined.", http_body='{"error":"card_declined"}',
                                                http_status=402))

    with pytest.raises(ProviderError) as excinfo:
        adapter.create_intent(intent_request())

    assert excinfo.value.provider == "stripe"
    assert excinfo.value.raw == '{"error":"card_declined"}'
    assert excinfo.value.upstream_status == 402


def test_refund_keeps_free_text_reason_in_metadata(adapter, mocker):
    mock_refund = mocker.Mock()
    mock_refund.id = "re_1"
    mock_refund.status = "succeeded"
    create = mocker.patch("stripe.Refund.create", return_value=mock_refund)
    transaction = mocker.Mock(id="tx-1", provider_payment_id="pi_123")

    result = adapter.refund(transaction, 1000, "guest left early", idempotency_key="refund:tx-1:1000")

    assert (result.provider_refund_id, result.status) == ("re_1", "succeeded")
    kwargs = create.call_args.kwargs
    assert kwargs["reason"] == "requested_by_customer"
    assert kwargs["metadata"] == {"reason": "guest left early"}
    assert kwargs["amount"] == 1000
    assert kwargs["idempotency_key"] == "refund:tx-1:1000"


def test_unpaid_checkout_completion_is_ignored(adapter):
    body = json.dumps({
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_1", "object": "checkout.session", "payment_status": "unpaid",
            "payment_intent": "pi_9", "amount_total": 2500, "currency": "chf",
            "metadata": {"order_id": "order-1", "tenant_id": "tenant-1"},
        }},
    }).encode()

    event = adapter.parse_event(body)

    assert event.outcome is PaymentOutcome.IGNORED
    assert event.provider_payment_id == "pi_9"
    assert event.amount_cents == 2500


def test_charge_refunded_maps_to_payment_intent(adapter):
    body = json.dumps({
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {"object": {"id": "ch_1", "object": "charge", "payment_intent": "pi_9", "amount": 2500,
                            "currency": "chf", "metadata": {}}},
    }).encode()

    event = adapter.parse_event(body)

    assert event.outcome is PaymentOutcome.REFUNDED
    assert event.provider_payment_id == "pi_9"
    assert event.status == "refunded"
