"""HTTP surface: status codes, actor headers and the error envelope."""

from decimal import Decimal

import pytest

from erp.decorators import has_role
from erp.services import ledger_service
from conftest import actor_headers, line


def test_health(client, db_session):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json["checks"]["database"]["status"] == "healthy"


def test_missing_actor_is_401(client, db_session, widget):
    response = client.get(f"/api/inventory/products/{widget.id}/stock")
    assert response.status_code == 401
    assert response.json["error"] == "authentication_required"


def test_unknown_role_is_401(client, db_session, widget):
    response = client.get(
        f"/api/inventory/products/{widget.id}/stock",
        headers={"X-Actor-Id": "3", "X-Actor-Role": "janitor"},
    )
    assert response.status_code == 401


def test_role_too_low_is_403(client, db_session, widget):
    response = client.post(
        "/api/inventory/movements",
        json={"product_id": widget.id, "quantity": "1", "movement_type": "adjustment_in"},
        headers=actor_headers("viewer"),
    )
    assert response.status_code == 403
    assert response.json["required_role"] == "warehouse"


def test_adjust_and_read_stock(client, db_session, widget):
    response = client.post(
        "/api/inventory/movements",
        json={"product_id": widget.id, "quantity": "5", "movement_type": "adjustment_in", "reason": "count"},
        headers=actor_headers("warehouse"),
    )
    assert response.status_code == 201
    assert response.json["new_stock"] == "15.000"

    response = client.get(f"/api/inventory/products/{widget.id}/stock", headers=actor_headers("viewer"))
    assert response.status_code == 200
    assert response.json["current_stock"] == "15.000"

    response = client.get(f"/api/inventory/products/{widget.id}/movements?limit=1", headers=actor_headers("viewer"))
    assert response.json["count"] == 2
    assert len(response.json["items"]) == 1
    assert response.json["items"][0]["reason"] == "count"


def test_insufficient_stock_envelope(client, db_session, widget):
    response = client.post(
        "/api/inventory/movements",
        json={"product_id": widget.id, "quantity": "50", "movement_type": "adjustment_out"},
        headers=actor_headers("warehouse"),
    )
    assert response.status_code == 400
    body = response.json
    assert body["error"] == "insufficient_stock"
    assert body["retryable"] is False
    assert body["details"]["shortages"][0]["product_id"] == widget.id


def test_validation_error_envelope(client, db_session):
    response = client.post(
        "/api/inventory/movements",
        json={"quantity": "1"},
        headers=actor_headers("warehouse"),
    )
    assert response.status_code == 400
    assert response.json["error"] == "validation_error"
    assert "product_id" in response.json["details"]["missing"]


def test_not_found_envelope(client, db_session):
    response = client.get("/api/sales/orders/987654", headers=actor_headers("viewer"))
    assert response.status_code == 404
    assert response.json["error"] == "not_found"


def test_bulk_adjust_route(client, db_session, widget, gadget):
    response = client.post(
        "/api/inventory/movements/bulk",
        json={"movements": [
            {"product_id": widget.id, "quantity": "1", "movement_type": "adjustment_out"},
            {"product_id": gadget.id, "quantity": "1", "movement_type": "adjustment_out"},
        ]},
        headers=actor_headers("warehouse"),
    )
    assert response.status_code == 201
    assert response.json["count"] == 2


def test_sales_order_lifecycle_over_http(client, db_session, customer, widget):
    headers = actor_headers("sales")
    response = client.post(
        "/api/sales/orders",
        json={"customer_id": customer.id, "lines": [line(widget, 4, "12.50")]},
        headers=headers,
    )
    assert response.status_code == 201
    order = response.json
    assert order["total_amount"] == "50.00"
    assert order["lines"][0]["line_number"] == 1

    for status, role in (("pending", "sales"), ("confirmed", "sales"), ("shipped", "warehouse")):
        response = client.post(
            f"/api/sales/orders/{order['id']}/transition", json={"status": status}, headers=actor_headers(role)
        )
        assert response.status_code == 200, response.json
        assert response.json["status"] == status

    assert ledger_service.current_stock(widget.id) == Decimal("6")

    response = client.post(f"/api/sales/orders/{order['id']}/transition", json={"status": "pending"}, headers=headers)
    assert response.status_code == 400
    assert response.json["error"] == "invalid_transition"

    response = client.get("/api/sales/orders?status=shipped", headers=actor_headers("viewer"))
    assert response.json["count"] == 1
    assert "lines" not in response.json["items"][0]


def test_edit_after_confirmation_is_rejected(client, db_session, customer, widget):
    headers = actor_headers("sales")
    order = client.post(
        "/api/sales/orders", json={"customer_id": customer.id, "lines": [line(widget, 1)]}, headers=headers
    ).json
    client.post(f"/api/sales/orders/{order['id']}/transition", json={"status": "pending"}, headers=headers)
    client.post(f"/api/sales/orders/{order['id']}/transition", json={"status": "confirmed"}, headers=headers)

    response = client.put(f"/api/sales/orders/{order['id']}", json={"notes": "x"}, headers=headers)
    assert response.status_code == 400
    assert response.json["error"] == "already_settled"


def test_delete_draft(client, db_session, customer, widget):
    headers = actor_headers("sales")
    order = client.post(
        "/api/sales/orders", json={"customer_id": customer.id, "lines": [line(widget, 1)]}, headers=headers
    ).json

    assert client.delete(f"/api/sales/orders/{order['id']}", headers=headers).status_code == 204
    assert client.get(f"/api/sales/orders/{order['id']}", headers=headers).status_code == 404


def test_quote_conversion_over_http(client, db_session, customer, widget):
    headers = actor_headers("sales")
    quote = client.post(
        "/api/sales/quotes",
        json={"customer_id": customer.id, "valid_until": "2025-12-31", "lines": [line(widget, 2)]},
        headers=headers,
    ).json
    for status in ("pending", "approved"):
        client.post(f"/api/sales/quotes/{quote['id']}/transition", json={"status": status}, headers=headers)

    response = client.post(f"/api/sales/quotes/{quote['id']}/convert", headers=headers)
    assert response.status_code == 201
    assert response.json["quote"]["status"] == "converted"
    assert response.json["order"]["quote_id"] == quote["id"]


def test_purchase_receive_over_http(client, db_session, supplier, widget):
    headers = actor_headers("purchasing")
    order = client.post(
        "/api/purchases/orders",
        json={"supplier_id": supplier.id, "expected_date": "2025-03-01", "lines": [line(widget, 5, "8.00")]},
        headers=headers,
    ).json
    assert order["order_number"].startswith("PO-")
    for status, role in (("pending", "purchasing"), ("received", "warehouse")):
        response = client.post(
            f"/api/purchases/orders/{order['id']}/transition", json={"status": status}, headers=actor_headers(role)
        )
        assert response.status_code == 200

    assert ledger_service.current_stock(widget.id) == Decimal("15")


def test_voucher_settlement_over_http(client, db_session, customer):
    headers = actor_headers("finance")
    voucher = client.post(
        "/api/finance/vouchers",
        json={"voucher_type": "receipt", "amount": "75.00", "customer_id": customer.id},
        headers=headers,
    ).json

    response = client.post(f"/api/finance/vouchers/{voucher['id']}/settle", json={}, headers=headers)
    assert response.status_code == 200
    assert response.json["voucher"]["status"] == "settled"
    assert response.json["transaction"]["amount"] == "75.00"

    response = client.post(f"/api/finance/vouchers/{voucher['id']}/settle", json={}, headers=headers)
    assert response.status_code == 400
    assert response.json["error"] == "already_settled"


def test_reversal_requires_manager(client, db_session):
    tx = client.post(
        "/api/finance/transactions",
        json={"transaction_type": "income", "category": "sales", "amount": "5"},
        headers=actor_headers("finance"),
    ).json

    response = client.post(f"/api/finance/transactions/{tx['id']}/reverse", json={}, headers=actor_headers("finance"))
    assert response.status_code == 403

    response = client.post(f"/api/finance/transactions/{tx['id']}/reverse", json={}, headers=actor_headers("manager"))
    assert response.status_code == 201
    assert response.json["transaction_type"] == "expense"


def test_schedule_routes(client, db_session, customer, widget):
    model = client.post(
        "/api/finance/schedule-models",
        json={"name": "30/70", "terms": [{"day_offset": 0, "percentage": 30}, {"day_offset": 30, "percentage": 70}]},
        headers=actor_headers("manager"),
    )
    assert model.status_code == 201

    order = client.post(
        "/api/sales/orders",
        json={"customer_id": customer.id, "lines": [line(widget, 100, "10.00")]},
        headers=actor_headers("sales"),
    ).json

    response = client.post(
        "/api/finance/schedules/apply",
        json={"order_id": order["id"], "model_id": model.json["id"], "start_date": "2025-01-01"},
        headers=actor_headers("finance"),
    )
    assert response.status_code == 201
    items = response.json["items"]
    assert [(i["due_date"], i["amount"]) for i in items] == [("2025-01-01", "300.00"), ("2025-01-31", "700.00")]

    response = client.post(f"/api/finance/schedules/{items[0]['id']}/pay", json={"payment_method": "cash"},
                           headers=actor_headers("finance"))
    assert response.status_code == 200
    assert response.json["schedule"]["status"] == "paid"


def test_report_routes(client, db_session, widget):
    for path in ("sales", "purchases", "low-stock", "reorder"):
        assert client.get(f"/api/reports/{path}", headers=actor_headers("viewer")).status_code == 200
    assert client.get("/api/reports/balances", headers=actor_headers("viewer")).status_code == 403
    assert client.get("/api/reports/cash-flow?group_by=month", headers=actor_headers("finance")).status_code == 200
    assert client.get("/api/reports/cash-flow?group_by=year", headers=actor_headers("finance")).status_code == 400


def test_department_roles_do_not_stand_in_for_each_other(client, db_session, customer, widget):
    response = client.post(
        "/api/sales/orders",
        json={"customer_id": customer.id, "lines": [line(widget, 1)]},
        headers=actor_headers("purchasing"),
    )
    assert response.status_code == 403
    assert response.json["required_role"] == "sales"

    response = client.post(
        "/api/inventory/movements",
        json={"product_id": widget.id, "quantity": "1", "movement_type": "adjustment_out"},
        headers=actor_headers("sales"),
    )
    assert response.status_code == 403

    response = client.post(
        "/api/finance/transactions",
        json={"transaction_type": "expense", "category": "supplies", "amount": "5"},
        headers=actor_headers("warehouse"),
    )
    assert response.status_code == 403
    assert response.json["required_role"] == "finance"
    assert ledger_service.current_stock(widget.id) == Decimal("10")


def test_shipping_needs_warehouse(client, db_session, customer, widget):
    order = client.post(
        "/api/sales/orders", json={"customer_id": customer.id, "lines": [line(widget, 2)]}, headers=actor_headers("sales")
    ).json
    for status in ("pending", "confirmed"):
        response = client.post(
            f"/api/sales/orders/{order['id']}/transition", json={"status": status}, headers=actor_headers("sales")
        )
        assert response.status_code == 200

    for role in ("sales", "finance"):
        response = client.post(
            f"/api/sales/orders/{order['id']}/transition", json={"status": "shipped"}, headers=actor_headers(role)
        )
        assert response.status_code == 403
        assert response.json["required_role"] == "warehouse"
    assert ledger_service.current_stock(widget.id) == Decimal("10")

    response = client.post(
        f"/api/sales/orders/{order['id']}/transition", json={"status": "confirmed"}, headers=actor_headers("warehouse")
    )
    assert response.status_code == 403
    assert response.json["required_role"] == "sales"

    response = client.post(
        f"/api/sales/orders/{order['id']}/transition", json={"status": "shipped"}, headers=actor_headers("manager")
    )
    assert response.status_code == 200
    assert ledger_service.current_stock(widget.id) == Decimal("8")


def test_receiving_needs_warehouse_and_cancel_needs_manager(client, db_session, supplier, widget):
    order = client.post(
        "/api/purchases/orders",
        json={"supplier_id": supplier.id, "lines": [line(widget, 3, "8.00")]},
        headers=actor_headers("purchasing"),
    ).json
    client.post(
        f"/api/purchases/orders/{order['id']}/transition", json={"status": "pending"}, headers=actor_headers("purchasing")
    )

    response = client.post(
        f"/api/purchases/orders/{order['id']}/transition", json={"status": "received"}, headers=actor_headers("purchasing")
    )
    assert response.status_code == 403
    assert response.json["required_role"] == "warehouse"

    response = client.post(f"/api/purchases/orders/{order['id']}/cancel", json={}, headers=actor_headers("purchasing"))
    assert response.status_code == 403
    response = client.post(
        f"/api/purchases/orders/{order['id']}/transition", json={"status": "cancelled"}, headers=actor_headers("purchasing")
    )
    assert response.status_code == 403

    response = client.post(f"/api/purchases/orders/{order['id']}/cancel", json={"reason": "dup"}, headers=actor_headers("manager"))
    assert response.status_code == 200
    assert response.json["status"] == "cancelled"


@pytest.mark.parametrize(
    "role,required,allowed",
    [
        ("warehouse", "warehouse", True),
        ("finance", "warehouse", False),
        ("sales", "purchasing", False),
        ("manager", "finance", True),
        ("super_admin", "sales", True),
        ("sales", "viewer", True),
        ("viewer", "sales", False),
        ("finance", "manager", False),
        ("admin", "manager", True),
    ],
)
def test_has_role(role, required, allowed):
    assert has_role(role, required) is allowed
