from fastapi.testclient import TestClient

from stockledger.main import create_app


def _receive(client, quantity=100, location_id="WH-1", headers=None):
    resp = client.post(
        "/stock/receive",
        json={"item_id": "ITEM-A", "location_id": location_id, "quantity": quantity},
        headers=headers or {},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health_and_trace_header(client):
    resp = client.get("/health", headers={"X-Trace-Id": "trace-123"})
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Trace-Id"] == "trace-123"
    assert client.get("/health").headers["X-Trace-Id"]


def test_stock_endpoints(client):
    record = _receive(client)
    assert record["quantity_available"] == 100
    assert record["meta"]["schema_version"] == 1

    shipped = client.post(
        "/stock/ship",
        json={"item_id": "ITEM-A", "location_id": "WH-1", "quantity": 10, "movement_type": "installation"},
        headers={"X-Operator": "tech-4"},
    )
    assert shipped.status_code == 200
    assert shipped.json()["quantity_on_hand"] == 90

    moved = client.post(
        "/stock/transfer",
        json={"item_id": "ITEM-A", "from_location_id": "WH-1", "to_location_id": "WH-2", "quantity": 15},
    ).json()
    assert moved["source"]["quantity_on_hand"] == 75
    assert len(moved["movements"]) == 2

    adjusted = client.post(
        "/stock/adjust", json={"item_id": "ITEM-A", "location_id": "WH-2", "delta": -5, "reason": "damaged box"}
    ).json()
    assert adjusted["quantity_on_hand"] == 10

    counted = client.post("/stock/count", json={"item_id": "ITEM-A", "location_id": "WH-2", "counted_quantity": 12})
    assert counted.json()["quantity_on_hand"] == 12

    listing = client.get("/stock", params={"item_id": "ITEM-A"}).json()
    assert sorted(r["location_id"] for r in listing) == ["WH-1", "WH-2"]
    assert client.get(f"/stock/{record['id']}").json()["quantity_on_hand"] == 75

    report = client.get(f"/stock/{record['id']}/reconcile").json()
    assert report["balanced"] is True

    installs = client.get("/movements", params={"item_id": "ITEM-A", "movement_type": "installation"}).json()
    assert [m["performed_by"] for m in installs] == ["tech-4"]


def test_errors_carry_codes_and_details(client):
    _receive(client, 10)

    short = client.post("/stock/ship", json={"item_id": "ITEM-A", "location_id": "WH-1", "quantity": 25})
    assert short.status_code == 400
    detail = short.json()["detail"]
    assert detail["code"] == "insufficient_stock"
    assert (detail["available"], detail["requested"]) == (10, 25)

    missing = client.get("/stock/999")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "not_found"

    same = client.post(
        "/stock/transfer",
        json={"item_id": "ITEM-A", "from_location_id": "WH-1", "to_location_id": "WH-1", "quantity": 1},
    )
    assert same.status_code == 422
    assert same.json()["detail"]["code"] == "validation_error"

    _receive(client, 1, location_id="BIN-SKU")
    mixed = client.post("/stock/receive", json={"item_id": "ITEM-B", "location_id": "BIN-SKU", "quantity": 1})
    assert mixed.status_code == 409
    assert mixed.json()["detail"]["code"] == "mixing_not_allowed"

    # request body validation is FastAPI's own 422
    assert client.post("/stock/receive", json={"item_id": "ITEM-A", "location_id": "WH-1", "quantity": 0}).status_code == 422


def test_reservation_endpoints(client):
    record = _receive(client)
    created = client.post(
        "/reservations",
        json={
            "stock_record_id": record["id"],
            "quantity": 20,
            "requested_by": "alice",
            "reference_type": "order",
            "reference_id": "SO-5",
            "expires_at": "2026-01-01T13:00:00",
        },
    )
    assert created.status_code == 200, created.text
    reservation = created.json()
    assert reservation["status"] == "active"

    summary = client.get(f"/stock/{record['id']}/reservations/summary").json()
    assert summary["quantity_reserved"] == 20
    assert summary["next_expiry"] == "2026-01-01T13:00:00"

    partial = client.post(f"/reservations/{reservation['id']}/release", json={"quantity": 5}).json()
    assert partial["quantity"] == 15

    consumed = client.post(f"/reservations/{reservation['id']}/consume").json()
    assert consumed["status"] == "consumed"

    again = client.post(f"/reservations/{reservation['id']}/cancel", json={"reason": "late"})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "invalid_state"

    listed = client.get("/reservations", params={"reserved_by": "alice", "status": ["consumed"]}).json()
    assert [r["id"] for r in listed] == [reservation["id"]]
    assert client.get(f"/reservations/{reservation['id']}").json()["status"] == "consumed"
    assert client.get(f"/stock/{record['id']}").json()["quantity_on_hand"] == 85


def test_expire_endpoint(client, clock):
    record = _receive(client)
    client.post(
        "/reservations",
        json={"stock_record_id": record["id"], "quantity": 5, "requested_by": "alice", "expires_at": "2026-01-01T12:30:00"},
    )
    assert client.post("/maintenance/expire-reservations", json={}).json() == {"expired": 0}
    clock.advance(hours=1)
    assert client.post("/maintenance/expire-reservations", json={"limit": 10}).json() == {"expired": 1}


def test_delete_stock_endpoint(client):
    record = _receive(client, 5)
    assert client.delete(f"/stock/{record['id']}").status_code == 409
    client.post("/stock/ship", json={"item_id": "ITEM-A", "location_id": "WH-1", "quantity": 5})
    assert client.delete(f"/stock/{record['id']}").json() == {"status": "ok"}
    assert client.get(f"/stock/{record['id']}").status_code == 404


def test_idempotent_replay(client):
    headers = {"Idempotency-Key": "rcv-1", "X-Operator": "dock-1"}
    first = _receive(client, 10, headers=headers)
    second = _receive(client, 10, headers=headers)

    assert second == first
    assert client.get(f"/stock/{first['id']}").json()["quantity_on_hand"] == 10

    clash = client.post(
        "/stock/receive", json={"item_id": "ITEM-A", "location_id": "WH-1", "quantity": 99}, headers=headers
    )
    assert clash.status_code == 409

    # keys are scoped per operator
    other = _receive(client, 10, headers={"Idempotency-Key": "rcv-1", "X-Operator": "dock-2"})
    assert other["quantity_on_hand"] == 20


def test_failed_request_frees_its_idempotency_key(client):
    headers = {"Idempotency-Key": "ship-1"}
    body = {"item_id": "ITEM-A", "location_id": "WH-1", "quantity": 5}
    assert client.post("/stock/ship", json=body, headers=headers).status_code == 404

    _receive(client, 20)
    retried = client.post("/stock/ship", json=body, headers=headers)
    assert retried.status_code == 200
    assert retried.json()["quantity_on_hand"] == 15


def test_reservation_transitions_accept_an_empty_body(make_orchestrator):
    orchestrator = make_orchestrator(approval_required=True)
    with TestClient(create_app(orchestrator, start_sweeper=False)) as client:
        record = _receive(client)

        def reserve(quantity):
            resp = client.post(
                "/reservations", json={"stock_record_id": record["id"], "quantity": quantity, "requested_by": "alice"}
            )
            assert resp.status_code == 200, resp.text
            return resp.json()["id"]

        rejected = client.post(f"/reservations/{reserve(5)}/reject")
        assert rejected.status_code == 200, rejected.text
        assert rejected.json()["status"] == "rejected"

        cancelled = client.post(f"/reservations/{reserve(5)}/cancel")
        assert cancelled.json()["status"] == "cancelled"

        held = reserve(10)
        client.post(f"/reservations/{held}/approve")
        released = client.post(f"/reservations/{held}/release", headers={"Idempotency-Key": "rel-1"})
        assert released.status_code == 200, released.text
        assert released.json()["status"] == "released"
        assert client.post(f"/reservations/{held}/release", headers={"Idempotency-Key": "rel-1"}).json() == released.json()

        assert client.get(f"/stock/{record['id']}").json()["quantity_reserved"] == 0
