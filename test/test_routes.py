from _helper import ADMIN_HEADERS, EDITOR_HEADERS, make_order
from orderflow.models import FulfillmentStatus, OrderStatus

S = OrderStatus


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_patch_status(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.patch(
        "/admin/orders/ord-1/status",
        json={"newStatus": "PACKING", "noteInternal": "Started packing"},
        headers=EDITOR_HEADERS,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["changed"] is True
    assert (body["from"], body["to"]) == ("CONFIRMED", "PACKING")
    assert body["order"]["orderStatus"] == "PACKING"
    assert body["order"]["fulfillmentStatus"] == "PACKING"


def test_invalid_transition_returns_structured_error(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.patch("/admin/orders/ord-1/status", json={"newStatus": "DELIVERED"}, headers=EDITOR_HEADERS)

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "ORDER_INVALID_TRANSITION"
    assert error["details"] == [{"from": "CONFIRMED", "to": "DELIVERED"}]


def test_cancel_without_reason(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.patch("/admin/orders/ord-1/status", json={"newStatus": "CANCELED"}, headers=EDITOR_HEADERS)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "MISSING_CANCEL_REASON"


def test_unknown_order(client):
    resp = client.patch("/admin/orders/nope/status", json={"newStatus": "PACKING"}, headers=EDITOR_HEADERS)

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "ORDER_NOT_FOUND"


def test_malformed_body(client, store):
    store.seed(make_order("ord-1"))

    resp = client.patch("/admin/orders/ord-1/status", json={"newStatus": "LOST"}, headers=EDITOR_HEADERS)

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]


def test_requires_actor(client, store):
    store.seed(make_order("ord-1"))

    resp = client.patch("/admin/orders/ord-1/status", json={"newStatus": "PACKING"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_REQUIRED"


def test_customers_cannot_use_admin_routes(client, store):
    store.seed(make_order("ord-1"))

    resp = client.get("/admin/orders/ord-1", headers={"X-Actor-Id": "cust-7", "X-Actor-Role": "CUSTOMER"})

    assert resp.status_code == 403


def test_only_admin_may_force(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.patch(
        "/admin/orders/ord-1/status",
        json={"newStatus": "DELIVERED", "force": True},
        headers=EDITOR_HEADERS,
    )
    assert resp.status_code == 403
    assert store.history_for("ord-1") == []

    resp = client.patch(
        "/admin/orders/ord-1/status",
        json={"newStatus": "DELIVERED", "force": True},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["forced"] is True


def test_concurrent_modification_is_409(client, store):
    stale = store.seed(make_order("ord-1", S.CONFIRMED))
    store.orders["ord-1"] = stale.model_copy(update={"version": 3})
    store.serve_stale("ord-1", stale, times=2)

    resp = client.patch("/admin/orders/ord-1/status", json={"newStatus": "PACKING"}, headers=EDITOR_HEADERS)

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "CONCURRENT_MODIFICATION"


def test_mark_delivered(client, store):
    store.seed(make_order("ord-1", S.SHIPPED, fulfillment_status=FulfillmentStatus.SHIPPED))

    resp = client.patch("/admin/orders/ord-1/shipping", json={"markDelivered": True}, headers=EDITOR_HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert body["statusUpdatedTo"] == "DELIVERED"
    assert body["order"]["fulfillmentStatus"] == "DELIVERED"


def test_shipping_details_only(client, store):
    store.seed(make_order("ord-1", S.PACKING))

    resp = client.patch(
        "/admin/orders/ord-1/shipping",
        json={"carrier": "GHN", "trackingCode": "GHN-0001"},
        headers=EDITOR_HEADERS,
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["statusUpdatedTo"] is None
    assert body["order"]["trackingCode"] == "GHN-0001"


def test_payment(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.patch(
        "/admin/orders/ord-1/payment",
        json={"paymentState": "PARTIAL", "transactionRef": "TCB-55"},
        headers=EDITOR_HEADERS,
    )

    assert resp.status_code == 200
    assert resp.json()["order"]["paymentState"] == "PARTIAL"


def test_payments_ledger(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.post(
        "/admin/orders/ord-1/payments",
        json={"amount": 200000, "paymentMethod": "BANK_TRANSFER", "note": "Deposit"},
        headers=EDITOR_HEADERS,
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["paymentId"] is not None
    assert body["order"]["paymentState"] == "PARTIAL"
    assert body["order"]["paidAmount"] == "200000"

    payments = client.get("/admin/orders/ord-1/payments", headers=EDITOR_HEADERS).json()["payments"]
    assert [(p["amount"], p["paymentMethod"], p["actorId"]) for p in payments] == [
        ("200000", "BANK_TRANSFER", "editor-1"),
    ]


def test_overpayment_is_400(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.post("/admin/orders/ord-1/payments", json={"amount": 600000}, headers=EDITOR_HEADERS)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "PAYMENT_EXCEEDS_OUTSTANDING"
    assert store.payments == []


def test_payment_amount_validated(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    resp = client.post("/admin/orders/ord-1/payments", json={"amount": 0}, headers=EDITOR_HEADERS)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_notes(client, store):
    store.seed(make_order("ord-1"))

    resp = client.post("/admin/orders/ord-1/notes", json={}, headers=EDITOR_HEADERS)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    resp = client.post("/admin/orders/ord-1/notes", json={"noteInternal": "Called buyer"}, headers=EDITOR_HEADERS)
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_history_newest_first(client, store):
    store.seed(make_order("ord-1", S.PENDING_CONFIRMATION))
    client.patch("/admin/orders/ord-1/status", json={"newStatus": "CONFIRMED"}, headers=EDITOR_HEADERS)
    client.patch("/admin/orders/ord-1/status", json={"newStatus": "PACKING"}, headers=ADMIN_HEADERS)

    resp = client.get("/admin/orders/ord-1/history", headers=EDITOR_HEADERS)

    history = resp.json()["history"]
    assert [h["toStatus"] for h in history] == ["PACKING", "CONFIRMED"]
    assert [h["actorDisplay"] for h in history] == ["Lan Admin", "Minh Editor"]
    assert history[0]["forced"] is False


def test_transitions_for_dropdown(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))

    body = client.get("/admin/orders/ord-1/transitions", headers=EDITOR_HEADERS).json()

    assert body["current"] == "CONFIRMED"
    assert [a["status"] for a in body["allowed"]] == ["PACKING", "CANCELED", "FAILED"]
    assert body["allowed"][0]["label"] == {"en": "Packing", "vi": "Đang đóng gói"}
    assert body["canCancel"] is True


def test_create_and_list_orders(client):
    payload = {
        "subtotal": "2000000",
        "tax": "200000",
        "total": "2200000",
        "buyer": {"name": "Tran Thi Binh", "email": "binh@congty.vn", "companyName": "Binh Minh Co."},
        "shippingAddress": {"recipient": "Tran Thi Binh", "line1": "5 Le Loi", "city": "Da Nang"},
    }

    resp = client.post("/admin/orders", json=payload, headers=EDITOR_HEADERS)

    assert resp.status_code == 201
    order = resp.json()["order"]
    assert order["orderStatus"] == "PENDING_CONFIRMATION"
    assert order["orderCode"] == "ORD-2026-000001"
    assert order["buyerSnapshot"]["companyName"] == "Binh Minh Co."

    listing = client.get("/admin/orders", params={"status": "PENDING_CONFIRMATION"}, headers=EDITOR_HEADERS).json()
    assert [o["id"] for o in listing["orders"]] == [order["id"]]
    assert listing["pagination"]["totalItems"] == 1


def test_bulk_status(client, store):
    store.seed(make_order("ord-1", S.CONFIRMED))
    store.seed(make_order("ord-2", S.DELIVERED))

    resp = client.post(
        "/admin/orders/bulk/status",
        json={"ids": ["ord-1", "ord-2", "ord-3"], "newStatus": "PACKING"},
        headers=EDITOR_HEADERS,
    )

    body = resp.json()
    assert resp.status_code == 200
    assert body["updated"] == 1
    assert body["missing"] == ["ord-3"]
    assert body["skipped"][0]["id"] == "ord-2"


def test_metrics_endpoint(client):
    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "order_transitions_total" in resp.text
