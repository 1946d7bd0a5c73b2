import httpx
import pytest

from slabworks import api
from slabworks.exchange import ExchangeRateClient


def _create_material(client, **overrides):
    payload = {
        "name": "Calacatta Oro",
        "category": "quartz",
        "sheet_stock": 10,
        "cost_per_sheet": 300.0,
        "sale_price_per_sheet": 600.0,
        "price_per_linear_meter": 150.0,
        "price_per_square_meter": 120.0,
    }
    payload.update(overrides)
    response = client.post("/materials", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _withdrawal_payload(material_id, **overrides):
    payload = {
        "material_id": material_id,
        "kind": "square_meters",
        "requested_area_m2": 7.0,
        "project": "Cocina Escazu",
        "user": "marco",
    }
    payload.update(overrides)
    return payload


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_material_crud(client):
    material = _create_material(client)

    listed = client.get("/materials").json()
    assert [m["id"] for m in listed] == [material["id"]]

    updated = client.put(f"/materials/{material['id']}", json={"price_per_square_meter": 135.0})
    assert updated.status_code == 200
    assert updated.json()["price_per_square_meter"] == 135.0
    assert updated.json()["sheet_stock"] == 10

    assert client.delete(f"/materials/{material['id']}").status_code == 204
    assert client.get(f"/materials/{material['id']}").status_code == 404


def test_material_with_history_cannot_be_deleted(client):
    material = _create_material(client)
    client.post("/withdrawals", json=_withdrawal_payload(material["id"]))

    response = client.delete(f"/materials/{material['id']}")

    assert response.status_code == 409


def test_stock_movements_adjust_sheet_stock(client):
    material = _create_material(client, sheet_stock=2)

    incoming = client.post(
        f"/materials/{material['id']}/movements",
        json={"movement_type": "incoming", "change_sheets": 5, "reference": "FAC-8812"},
    )
    assert incoming.status_code == 201
    assert client.get(f"/materials/{material['id']}").json()["sheet_stock"] == 7

    too_many = client.post(
        f"/materials/{material['id']}/movements",
        json={"movement_type": "outgoing", "change_sheets": -8},
    )
    assert too_many.status_code == 400
    assert client.get(f"/materials/{material['id']}").json()["sheet_stock"] == 7
    assert len(client.get(f"/materials/{material['id']}/movements").json()) == 1


def test_preview_does_not_change_anything(client):
    material = _create_material(client)

    response = client.post(
        "/withdrawals/preview",
        json={"material_id": material["id"], "kind": "square_meters", "requested_area_m2": 7.0},
    )

    assert response.status_code == 200
    preview = response.json()
    assert preview["sheets_needed"] == 2
    assert preview["remnant_generated_m2"] == pytest.approx(3.24)
    assert preview["cost"] == 600.0
    assert preview["price"] == 840.0
    assert preview["profit"] == 240.0
    assert preview["available_sheets"] == 10
    assert preview["sheet_area_m2"] == 5.12
    assert preview["sheet_linear_meters"] == 6.44
    assert client.get(f"/materials/{material['id']}").json()["sheet_stock"] == 10
    assert client.get("/remnants").json() == []


def test_withdrawal_lifecycle(client):
    material = _create_material(client)

    created = client.post("/withdrawals", json=_withdrawal_payload(material["id"]))
    assert created.status_code == 201, created.text
    withdrawal = created.json()
    assert withdrawal["sheets_consumed"] == 2
    assert withdrawal["profit"] == 240.0

    remnants = client.get("/remnants", params={"material_id": material["id"]}).json()
    assert len(remnants) == 1
    assert remnants[0]["area_m2"] == pytest.approx(3.24)
    assert remnants[0]["origin_withdrawal_id"] == withdrawal["id"]

    assert client.get(f"/withdrawals/{withdrawal['id']}").json()["project"] == "Cocina Escazu"
    assert len(client.get("/withdrawals", params={"project": "escazu"}).json()) == 1

    assert client.delete(f"/withdrawals/{withdrawal['id']}").status_code == 204
    assert client.get(f"/materials/{material['id']}").json()["sheet_stock"] == 10
    assert client.get("/remnants").json() == []
    assert client.get(f"/withdrawals/{withdrawal['id']}").status_code == 404


def test_insufficient_stock_reports_the_shortfall(client):
    material = _create_material(client, sheet_stock=1)

    response = client.post("/withdrawals", json=_withdrawal_payload(material["id"]))

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "InsufficientStock"
    assert body["required"] == 2
    assert body["available"] == 1
    assert body["shortfall"] == 1


def test_blank_project_is_rejected(client):
    material = _create_material(client)

    response = client.post("/withdrawals", json=_withdrawal_payload(material["id"], project="  "))

    assert response.status_code == 400
    assert response.json()["error"] == "MissingRequiredField"
    assert client.get(f"/materials/{material['id']}").json()["sheet_stock"] == 10


def test_invalid_quantity_is_a_bad_request(client):
    material = _create_material(client)

    response = client.post(
        "/withdrawals/preview",
        json={"material_id": material["id"], "kind": "linear_meters", "length_m": 2.0},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidQuantity"


def test_withdrawal_for_unknown_material(client):
    response = client.post("/withdrawals", json=_withdrawal_payload(4040))

    assert response.status_code == 404


def test_remnant_can_be_marked_as_scrap(client):
    material = _create_material(client)
    created = client.post("/remnants", json={"material_id": material["id"], "area_m2": 0.8})
    assert created.status_code == 201

    updated = client.put(f"/remnants/{created.json()['id']}", json={"usable": False, "notes": "cracked"})

    assert updated.status_code == 200
    assert updated.json()["usable"] is False
    preview = client.post(
        "/withdrawals/preview",
        json={
            "material_id": material["id"],
            "kind": "square_meters",
            "requested_area_m2": 0.5,
            "use_remnants": True,
        },
    ).json()
    assert preview["available_remnant_m2"] == 0
    assert preview["sheets_needed"] == 1


def test_used_remnant_cannot_be_edited(client):
    material = _create_material(client)
    remnant = client.post("/remnants", json={"material_id": material["id"], "area_m2": 2.0}).json()
    client.post(
        "/withdrawals",
        json=_withdrawal_payload(material["id"], requested_area_m2=2.0, use_remnants=True),
    )

    listed = client.get("/remnants", params={"include_used": True}).json()
    assert [r["used"] for r in listed if r["id"] == remnant["id"]] == [True]
    assert client.put(f"/remnants/{remnant['id']}", json={"notes": "x"}).status_code == 409


def test_loan_endpoints(client):
    installment = client.post(
        "/loans/installment", json={"principal": 1200, "annual_rate_percent": 0, "term_months": 12}
    )
    assert installment.json() == {"monthly_installment": 100.0}

    loan = client.post(
        "/loans",
        json={
            "concept": "CNC bridge saw",
            "creditor": "BAC Credomatic",
            "principal": 1000,
            "annual_rate_percent": 12,
            "term_months": 12,
        },
    ).json()
    assert loan["monthly_installment"] == pytest.approx(88.85)

    split = client.get(f"/loans/{loan['id']}/payments/split", params={"amount": 100}).json()
    assert split == {"principal_portion": 90.0, "interest_portion": 10.0}

    paid = client.post(f"/loans/{loan['id']}/payments", json={"amount": 100})
    assert paid.status_code == 201

    refreshed = client.get(f"/loans/{loan['id']}").json()
    assert refreshed["outstanding_balance"] == 910.0
    assert refreshed["percent_paid"] == 9.0
    assert len(client.get(f"/loans/{loan['id']}/payments").json()) == 1


def test_bad_loan_terms_and_split(client):
    assert client.post(
        "/loans/installment", json={"principal": 0, "annual_rate_percent": 5, "term_months": 12}
    ).status_code == 400

    loan = client.post(
        "/loans",
        json={"concept": "Truck", "creditor": "BCR", "principal": 500, "term_months": 5},
    ).json()
    response = client.post(
        f"/loans/{loan['id']}/payments",
        json={"amount": 100, "principal_portion": 60, "interest_portion": 30},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "SplitMismatch"
    assert client.get("/loans/999").status_code == 404


def test_production_order_endpoint(client):
    client.post("/expenses", json={"concept": "Alquiler", "amount": 1000, "is_fixed": True, "spent_on": "2025-03-01"})

    order = client.post(
        "/production-orders",
        json={
            "envelope_code": "S-77",
            "client": "Hotel Playa",
            "linear_meters": 25,
            "produced_on": "2025-03-12",
            "material_cost": 200,
            "labor_cost": 80,
        },
    )

    assert order.status_code == 201
    assert order.json()["fixed_cost_assigned"] == 1000.0
    assert order.json()["total_cost"] == 1280.0
    assert len(client.get("/expenses", params={"year": 2025, "month": 3}).json()) == 1


def test_stock_alerts(client):
    empty = _create_material(client, name="Absolute Black", sheet_stock=0)
    stocked = _create_material(client, name="Blanco Polar", sheet_stock=3)
    client.post("/remnants", json={"material_id": stocked["id"], "area_m2": 1.5})

    alerts = client.get("/alerts").json()

    assert {(a["kind"], a["material_id"]) for a in alerts} == {
        ("material", empty["id"]),
        ("remnant", empty["id"]),
    }


def test_exchange_rate_endpoint(client, monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"serie": [{"valor": 506.4}]}))
    monkeypatch.setattr(api, "get_exchange_client", lambda: ExchangeRateClient(transport=transport))

    body = client.get("/exchange-rate").json()

    assert body["rate"] == 506.4
    assert body["base"] == "USD"


@pytest.mark.parametrize("path", ["/withdrawals/preview", "/withdrawals"])
def test_infinite_quantity_is_a_bad_request(client, path):
    material = _create_material(client)
    body = (
        '{"material_id": %d, "kind": "square_meters", "requested_area_m2": Infinity,'
        ' "project": "Cocina", "user": "marco"}' % material["id"]
    )

    response = client.post(path, content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidQuantity"
    assert client.get(f"/materials/{material['id']}").json()["sheet_stock"] == 10


def test_invoicing_withdrawals_and_collecting_payment(client):
    material = _create_material(client)
    first = client.post("/withdrawals", json=_withdrawal_payload(material["id"], client="Familia Mora")).json()
    second = client.post("/withdrawals", json=_withdrawal_payload(material["id"], project="Isla")).json()

    pending = client.get("/withdrawals/uninvoiced").json()
    assert {w["id"] for w in pending} == {first["id"], second["id"]}

    created = client.post(
        "/invoices/from-withdrawals",
        json={"withdrawal_ids": [first["id"]], "invoice_number": "F-100", "issued_on": "2025-04-02"},
    )
    assert created.status_code == 201, created.text
    invoice = created.json()[0]
    assert invoice["total_amount"] == 840.0
    assert invoice["amount_outstanding"] == 840.0
    assert invoice["status"] == "pending"
    assert [w["id"] for w in client.get("/withdrawals/uninvoiced").json()] == [second["id"]]

    again = client.post("/invoices/from-withdrawals", json={"withdrawal_ids": [first["id"]]})
    assert again.status_code == 409
    assert again.json()["error"] == "AlreadyInvoiced"

    paid = client.post(f"/invoices/{invoice['id']}/payments", json={"amount": 340, "method": "transfer"})
    assert paid.status_code == 201
    partial = client.get(f"/invoices/{invoice['id']}").json()
    assert partial["status"] == "partial"
    assert partial["amount_outstanding"] == 500.0

    too_much = client.post(f"/invoices/{invoice['id']}/payments", json={"amount": 600})
    assert too_much.status_code == 400
    assert too_much.json()["error"] == "Overpayment"

    assert [i["id"] for i in client.get("/invoices", params={"status": "partial"}).json()] == [invoice["id"]]
    assert len(client.get(f"/invoices/{invoice['id']}/payments").json()) == 1
    assert client.delete(f"/withdrawals/{first['id']}").status_code == 409


def test_reversal_of_a_drawn_on_offcut_is_a_conflict(client):
    material = _create_material(client)
    first = client.post("/withdrawals", json=_withdrawal_payload(material["id"])).json()
    client.post(
        "/withdrawals",
        json=_withdrawal_payload(material["id"], requested_area_m2=1.0, use_remnants=True, project="Isla"),
    )

    response = client.delete(f"/withdrawals/{first['id']}")

    assert response.status_code == 409
    assert response.json()["error"] == "RemnantInUse"


def test_invoice_for_unknown_withdrawal_is_not_found(client):
    response = client.post("/invoices", json={"client": "Hotel Playa", "total_amount": 100, "withdrawal_id": 777})

    assert response.status_code == 404
    assert client.get("/invoices/777").status_code == 404
