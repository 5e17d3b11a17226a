import json

from payflow.models import AuditLogEntry, Invoice, Order, PaymentTransaction, Refund, WebhookEvent
from payflow.qrbill import decode_payload
from payflow.signatures import sign


def test_full_payment_lifecycle_integration(client, settings, auth_headers, make_token, make_order, db, mocker):
    """
    Test the full lifecycle:
    1. Create payment (API -> DB + Stripe mocked)
    2. Webhook success, delivered twice (Stripe -> API -> DB)
    3. Invoice the paid order
    4. Refund part of the payment (API -> DB + Stripe mocked)
    """
    make_order(order_id="ORDER-INT-001", total_cents=2500,
               items=[("Dinner for two", 1, 2500)], billing={"name": "Anna Muster", "city": "Bern"})

    # --- 1. CREATE PAYMENT ---
    mock_pi = mocker.Mock()
    mock_pi.id = "pi_integration_test_123"
    mock_pi.status = "requires_payment_method"
    mock_pi.client_secret = "secret_test_456"
    mock_pi.next_action = None
    mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)

    payload = {
        "tenantId": "tenant-1",
        "orderId": "ORDER-INT-001",
        "amountCents": 2500,
        "currency": "CHF",
        "customerEmail": "guest@example.com",
    }
    response = client.post("/payments", json=payload, headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["clientSecret"] == "secret_test_456"
    transaction_id = response.json()["transactionId"]

    db.expire_all()
    assert db.get(Order, "ORDER-INT-001").status == "pending"
    assert db.get(PaymentTransaction, transaction_id).status == "requires_payment_method"

    # --- 2. WEBHOOK SUCCESS ---
    event = json.dumps({
        "id": "evt_integration_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_integration_test_123",
            "object": "payment_intent",
            "status": "succeeded",
            "amount_received": 2500,
            "currency": "chf",
            "metadata": {"order_id": "ORDER-INT-001", "tenant_id": "tenant-1"},
        }},
    }).encode()
    secret = settings.get("STRIPE_WEBHOOK_SECRET")
    for expected_duplicate in (False, True):
        response = client.post("/payments/webhooks/stripe", content=event,
                               headers={"Stripe-Signature": sign(event, secret)})
        assert response.status_code == 200
        assert response.json()["duplicate"] is expected_duplicate

    db.expire_all()
    assert db.get(Order, "ORDER-INT-001").status == "paid"
    assert db.get(PaymentTransaction, transaction_id).status == "succeeded"
    assert db.query(WebhookEvent).count() == 1

    # --- 3. INVOICE ---
    response = client.post("/invoices", json={"tenantId": "tenant-1", "orderId": "ORDER-INT-001"},
                           headers=auth_headers)

    assert response.status_code == 200
    invoice = response.json()
    assert invoice["invoiceNumber"].endswith("-001")
    assert decode_payload(invoice["qrBillPayload"])[18:20] == ["25.00", "CHF"]
    assert db.query(Invoice).count() == 1

    # --- 4. REFUND ---
    mock_refund = mocker.Mock()
    mock_refund.id = "re_integration_1"
    mock_refund.status = "succeeded"
    refund_create = mocker.patch("stripe.Refund.create", return_value=mock_refund)

    staff_headers = {"Authorization": f"Bearer {make_token(sub='staff-1', role='staff')}"}
    refund_body = {
        "tenantId": "tenant-1",
        "orderId": "ORDER-INT-001",
        "transactionId": transaction_id,
        "amountCents": 1000,
        "reason": "requested_by_customer",
        "initiatedBy": "staff",
    }
    first = client.post("/payments/refunds", json=refund_body, headers={**staff_headers, "Idempotency-Key": "r-1"})
    retry = client.post("/payments/refunds", json=refund_body, headers={**staff_headers, "Idempotency-Key": "r-1"})

    assert first.status_code == 200
    assert first.json() == retry.json()
    assert first.json()["status"] == "succeeded"
    assert refund_create.call_count == 1
    assert refund_create.call_args.kwargs["payment_intent"] == "pi_integration_test_123"

    over = client.post("/payments/refunds", json={**refund_body, "amountCents": 5000}, headers=staff_headers)
    assert over.status_code == 422
    assert refund_create.call_count == 1

    db.expire_all()
    assert db.query(Refund).one().amount_cents == 1000
    assert db.get(Order, "ORDER-INT-001").status == "refunded"
    actions = {entry.action for entry in db.query(AuditLogEntry).all()}
    assert {"payment.intent.created", "order.status_updated", "invoice.generated",
            "payment.refund.created"} <= actions
