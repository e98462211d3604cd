def _borrow(client, headers, title_id, quantity=1):
    return client.post("/loans/", json={"title_id": title_id, "quantity": quantity}, headers=headers)


def test_health(client):
    assert client.get("/health").get_json() == {"ok": True}


def test_titles_are_public_but_creation_needs_admin(client, auth_headers):
    res = client.post("/titles/", json={"title": "Dune", "author": "Herbert", "total_copies": 2}, headers=auth_headers())
    assert res.status_code == 403

    res = client.post("/titles/", json={"title": "Dune", "author": "Herbert", "total_copies": 2}, headers=auth_headers(role="admin"))
    assert res.status_code == 201
    title_id = res.get_json()["data"]["id"]

    data = client.get(f"/titles/{title_id}").get_json()["data"]
    assert data["available_copies"] == 2
    assert client.get("/titles/999").status_code == 404


def test_missing_token_is_rejected(client, make_title):
    t = make_title()
    assert client.post("/loans/", json={"title_id": t.id}).status_code == 401


def test_borrow_and_return_over_http(client, auth_headers, make_title, clock):
    t = make_title()
    headers = auth_headers(1)

    res = _borrow(client, headers, t.id)
    assert res.status_code == 201
    loan = res.get_json()["data"][0]
    assert loan["status"] == "borrowed"
    assert loan["is_overdue"] is False

    res = _borrow(client, auth_headers(2), t.id)
    assert res.status_code == 409
    assert res.get_json()["code"] == "insufficient_copies"

    # members cannot see each other's loans
    assert client.get(f"/loans/{loan['id']}", headers=auth_headers(2)).status_code == 404

    clock.advance(days=16)
    data = client.get(f"/loans/{loan['id']}", headers=headers).get_json()["data"]
    assert data["is_overdue"] is True
    assert data["current_fine"] == 10.0

    res = client.post(f"/loans/{loan['id']}/return", headers=headers)
    assert res.status_code == 200
    assert res.get_json()["data"]["fine_amount"] == 10.0

    res = client.post(f"/loans/{loan['id']}/return", headers=headers)
    assert res.get_json()["code"] == "invalid_transition"


def test_batch_borrow_rejects_bad_quantity(client, auth_headers, make_title):
    t = make_title(total=3)
    res = client.post("/loans/", json={"items": [{"title_id": t.id, "quantity": 0}]}, headers=auth_headers())
    assert res.status_code == 400
    assert client.post("/loans/", json={}, headers=auth_headers()).status_code == 400


def test_eligibility_endpoint(client, auth_headers, make_title, clock):
    t = make_title()
    headers = auth_headers(1)
    _borrow(client, headers, t.id)

    data = client.get("/loans/eligibility", headers=headers).get_json()["data"]
    assert data["allowed"] is True
    assert data["profile"]["current_borrowed_count"] == 1
    assert data["profile"]["remaining"] == 4

    data = client.get("/loans/eligibility?quantity=5", headers=headers).get_json()["data"]
    assert data["allowed"] is False
    assert data["code"] == "limit_exceeded"

    clock.advance(days=15)
    data = client.get("/loans/eligibility", headers=headers).get_json()["data"]
    assert data["code"] == "has_unpaid_fines"
    assert data["profile"]["outstanding_fines_total"] == 5.0


def test_denied_borrow_reports_reason(client, auth_headers, make_title, clock):
    a, b = make_title(), make_title()
    headers = auth_headers(1)
    _borrow(client, headers, a.id)
    clock.advance(days=15)

    res = _borrow(client, headers, b.id)
    assert res.status_code == 403
    assert res.get_json()["code"] == "has_unpaid_fines"


def test_fines_and_payment_flow(client, auth_headers, make_title, clock):
    t = make_title()
    headers = auth_headers(1)
    loan_id = _borrow(client, headers, t.id).get_json()["data"][0]["id"]
    clock.advance(days=17)

    body = client.get("/fines/my", headers=headers).get_json()
    assert body["outstanding_total"] == 15.0
    fine = body["data"][0]
    assert fine["loan_id"] == loan_id
    assert fine["status"] == "OVERDUE"

    res = client.post("/payments/", json={
        "fine_ids": [fine["id"]],
        "payment_method": "card",
        "total_amount": 10,
    }, headers=headers)
    assert res.status_code == 409
    assert res.get_json()["code"] == "amount_mismatch"

    res = client.post("/payments/", json={
        "fine_ids": [fine["id"]],
        "payment_method": "card",
        "total_amount": 15,
    }, headers=headers)
    assert res.status_code == 201
    payment = res.get_json()
    assert payment["status"] == "COMPLETED"

    body = client.get("/fines/my", headers=headers).get_json()
    assert body["data"][0]["status"] == "PAID"

    res = client.get(f"/payments/{payment['payment_id']}/receipt", headers=headers)
    assert res.status_code == 200
    assert payment["transaction_id"] in res.get_data(as_text=True)

    assert client.get(f"/payments/{payment['payment_id']}", headers=auth_headers(2)).status_code == 404
    assert len(client.get("/payments/my", headers=headers).get_json()["data"]) == 1


def test_declined_payment_returns_402(client, auth_headers, make_title, clock, gateway):
    gateway.decline_methods = ("card",)
    t = make_title()
    headers = auth_headers(1)
    _borrow(client, headers, t.id)
    clock.advance(days=15)
    fine_id = client.get("/fines/my", headers=headers).get_json()["data"][0]["id"]

    res = client.post("/payments/", json={
        "fine_ids": [fine_id],
        "payment_method": "card",
        "total_amount": 5,
    }, headers=headers)
    assert res.status_code == 402
    assert res.get_json()["code"] == "gateway_declined"

    res = client.post("/payments/", json={"fine_ids": [fine_id]}, headers=headers)
    assert res.status_code == 400


def test_webhook_completes_pending_payment(app, client, auth_headers, make_title, clock, gateway):
    app.config["PAYMENT_WEBHOOK_SECRET"] = "s3cret"
    gateway.pending_methods = ("upi",)
    t = make_title()
    headers = auth_headers(1)
    _borrow(client, headers, t.id)
    clock.advance(days=15)
    fine_id = client.get("/fines/my", headers=headers).get_json()["data"][0]["id"]

    res = client.post("/payments/", json={
        "fine_ids": [fine_id],
        "payment_method": "upi",
        "total_amount": 5,
    }, headers=headers)
    assert res.status_code == 202
    txn = res.get_json()["transaction_id"]

    payload = {"transaction_id": txn, "status": "COMPLETED"}
    assert client.post("/payments/webhook", json=payload).status_code == 403

    res = client.post("/payments/webhook", json=payload, headers={"X-Webhook-Secret": "s3cret"})
    assert res.status_code == 200
    assert res.get_json()["status"] == "COMPLETED"

    res = client.post("/payments/webhook", json={"transaction_id": "nope", "status": "COMPLETED"},
                      headers={"X-Webhook-Secret": "s3cret"})
    assert res.status_code == 404


def test_webhook_closed_without_secret(app, client, auth_headers, make_title, clock, gateway):
    assert not app.config["PAYMENT_WEBHOOK_SECRET"]
    gateway.pending_methods = ("upi",)
    t = make_title()
    headers = auth_headers(1)
    _borrow(client, headers, t.id)
    clock.advance(days=15)
    fine_id = client.get("/fines/my", headers=headers).get_json()["data"][0]["id"]

    res = client.post("/payments/", json={
        "fine_ids": [fine_id],
        "payment_method": "upi",
        "total_amount": 5,
    }, headers=headers)
    payment = res.get_json()

    payload = {"transaction_id": payment["transaction_id"], "status": "COMPLETED"}
    assert client.post("/payments/webhook", json=payload).status_code == 403
    res = client.post("/payments/webhook", json=payload, headers={"X-Webhook-Secret": ""})
    assert res.status_code == 403

    data = client.get(f"/payments/{payment['payment_id']}", headers=headers).get_json()["data"]
    assert data["status"] == "PENDING"
    fine = client.get("/fines/my", headers=headers).get_json()["data"][0]
    assert fine["status"] == "OVERDUE"


def test_admin_endpoints(client, auth_headers, make_title, clock):
    t = make_title()
    _borrow(client, auth_headers(1), t.id)
    clock.advance(days=20)

    assert client.get("/loans/overdue", headers=auth_headers()).status_code == 403
    assert client.get("/fines/all", headers=auth_headers()).status_code == 403

    admin = auth_headers(99, role="admin")
    overdue = client.get("/loans/overdue", headers=admin).get_json()["data"]
    assert [l["member_id"] for l in overdue] == [1]

    res = client.post("/fines/recalculate", headers=admin)
    assert res.get_json()["updated_count"] == 1

    fines = client.get("/fines/all", headers=admin).get_json()["data"]
    assert fines[0]["total_amount"] == 30.0

    res = client.post("/fines/waive", json={"fine_ids": [fines[0]["id"]]}, headers=admin)
    assert res.status_code == 400

    res = client.post("/fines/waive", json={"fine_ids": [fines[0]["id"]], "reason": "hardship"}, headers=admin)
    assert res.status_code == 200
    assert res.get_json()["data"][0]["status"] == "WAIVED"

    stats = client.get("/fines/statistics?member_id=1", headers=admin).get_json()["data"]
    assert stats["total_waived_fines"] == 30.0
    assert stats["total_outstanding_fines"] == 0


def test_lost_book_amount_is_staff_only(client, auth_headers, make_title):
    t = make_title()
    headers = auth_headers(1)
    loan_id = _borrow(client, headers, t.id).get_json()["data"][0]["id"]

    res = client.post(f"/loans/{loan_id}/lost", json={"amount": 1}, headers=headers)
    assert res.status_code == 200
    assert res.get_json()["data"]["fine_amount"] == 500.0

    admin = auth_headers(99, role="admin")
    res = client.post(f"/titles/loans/{loan_id}/restock", headers=admin)
    assert res.get_json()["data"]["available_copies"] == 1
