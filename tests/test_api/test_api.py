"""
HTTP tests for the order, inventory and route endpoints.

Requests go through the ASGI app in-process; the database dependency uses
the global session factory the ``session_factory`` fixture points at the
per-test SQLite file.
"""

import uuid
from datetime import date, timedelta
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import ValidationError

from fulfillment_engine.core.actor import Actor, ActorRole
from fulfillment_engine.core.config import Settings, get_settings
from fulfillment_engine.main import app
from fulfillment_engine.services.notifications.sinks import wait_for_pending_events
from fulfillment_engine.services.orders.validation import business_today
from tests.conftest import ADMIN, AREA_COORDINATES, MANAGER, PACKER, SALES

API = "/api/v1"
BUYER = Actor(actor_id="buyer-1", role=ActorRole.CUSTOMER)


def headers(actor: Actor, customer_id: Optional[uuid.UUID] = None) -> dict[str, str]:
    result = {"X-Actor-Id": actor.actor_id, "X-Actor-Role": actor.role.value}
    if customer_id is not None:
        result["X-Customer-Id"] = str(customer_id)
    return result


@pytest_asyncio.fixture
async def client(session_factory):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
    await wait_for_pending_events()


@pytest_asyncio.fixture
async def product(client) -> dict:
    response = await client.post(
        f"{API}/inventory/products",
        json={"sku": "beans", "name": "Green beans", "unit_price": 450, "opening_stock": 20},
        headers=headers(ADMIN),
    )
    assert response.status_code == 201
    return response.json()


def order_body(customer, product, delivery_date, quantity=2, area="north") -> dict:
    latitude, longitude = AREA_COORDINATES[area]
    return {
        "customer_id": str(customer.id),
        "lines": [{"product_id": product["id"], "quantity": quantity}],
        "delivery_address": {
            "street": "12 Wharf Rd",
            "area_tag": area,
            "latitude": latitude,
            "longitude": longitude,
        },
        "delivery_date": delivery_date.isoformat(),
    }


async def place_order(client, customer, product, delivery_date, **kwargs) -> dict:
    response = await client.post(
        f"{API}/orders",
        json=order_body(customer, product, delivery_date, **kwargs),
        headers=headers(SALES),
    )
    assert response.status_code == 201, response.text
    return response.json()["order"]


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready_checks_database(self, client):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "database": True}


# ============================================================================
# Server Settings
# ============================================================================


class TestServerSettings:
    def test_server_address_from_environment(self, monkeypatch):
        monkeypatch.setenv("APP_SERVER_HOST", "127.0.0.1")
        monkeypatch.setenv("APP_SERVER_PORT", "9100")

        settings = Settings()

        assert (settings.server_host, settings.server_port) == ("127.0.0.1", 9100)

    def test_server_port_out_of_range(self):
        with pytest.raises(ValidationError):
            Settings(server_port=70000)


# ============================================================================
# Actor Headers
# ============================================================================


class TestActorHeaders:
    @pytest.mark.asyncio
    async def test_missing_headers(self, client):
        response = await client.get(f"{API}/orders/{uuid.uuid4()}")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role(self, client):
        response = await client.get(
            f"{API}/orders/{uuid.uuid4()}",
            headers={"X-Actor-Id": "x", "X-Actor-Role": "janitor"},
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_system_role_is_reserved(self, client):
        response = await client.get(
            f"{API}/orders/{uuid.uuid4()}",
            headers={"X-Actor-Id": "x", "X-Actor-Role": "system"},
        )

        assert response.status_code == 403


# ============================================================================
# Orders
# ============================================================================


class TestOrders:
    @pytest.mark.asyncio
    async def test_create_order(self, client, customer, product, delivery_date):
        response = await client.post(
            f"{API}/orders",
            json=order_body(customer, product, delivery_date),
            headers=headers(SALES),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["backorder_pending"] is False
        order = body["order"]
        assert order["status"] == "pending"
        assert order["version"] == 1
        assert order["area_tag"] == "north"
        assert order["subtotal"] == 900
        assert order["line_items"][0]["sku"] == "BEANS"
        assert order["status_history"][0]["to_status"] == "pending"

    @pytest.mark.asyncio
    async def test_short_order_reports_backorder(
        self, client, customer, product, delivery_date
    ):
        response = await client.post(
            f"{API}/orders",
            json=order_body(customer, product, delivery_date, quantity=25),
            headers=headers(SALES),
        )

        body = response.json()
        assert body["backorder_pending"] is True
        assert body["order"]["backorder_status"] == "pending_approval"
        assert body["order"]["stock_shortfall"][product["id"]]["shortfall"] == 5

    @pytest.mark.asyncio
    async def test_get_order(self, client, customer, product, delivery_date):
        order = await place_order(client, customer, product, delivery_date)

        response = await client.get(
            f"{API}/orders/{order['id']}", headers=headers(PACKER)
        )

        assert response.status_code == 200
        assert response.json()["order_number"] == order["order_number"]

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.get(
            f"{API}/orders/{uuid.uuid4()}", headers=headers(MANAGER)
        )

        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_confirm_then_stale_version(
        self, client, customer, product, delivery_date
    ):
        order = await place_order(client, customer, product, delivery_date)
        url = f"{API}/orders/{order['id']}/transitions"

        confirmed = await client.post(
            url, json={"target_status": "confirmed", "version": 1}, headers=headers(MANAGER)
        )
        stale = await client.post(
            url, json={"target_status": "cancelled", "version": 1}, headers=headers(MANAGER)
        )

        assert confirmed.status_code == 200
        assert confirmed.json()["version"] == 2
        assert stale.status_code == 409
        body = stale.json()
        assert body["error"] == "VERSION_CONFLICT"
        assert body["retryable"] is True
        assert body["context"]["current_version"] == 2
        assert "request_id" in body

    @pytest.mark.asyncio
    async def test_invalid_edge(self, client, customer, product, delivery_date):
        order = await place_order(client, customer, product, delivery_date)

        response = await client.post(
            f"{API}/orders/{order['id']}/transitions",
            json={"target_status": "delivered", "version": 1},
            headers=headers(MANAGER),
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "INVALID_TRANSITION"
        assert body["retryable"] is False

    @pytest.mark.asyncio
    async def test_role_not_permitted(self, client, customer, product, delivery_date):
        order = await place_order(client, customer, product, delivery_date)

        response = await client.post(
            f"{API}/orders/{order['id']}/transitions",
            json={"target_status": "confirmed", "version": 1},
            headers=headers(PACKER),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "TRANSITION_NOT_PERMITTED"

    @pytest.mark.asyncio
    async def test_customer_orders_for_own_account_only(
        self, client, harness, customer, product, delivery_date
    ):
        other = await harness.add_customer("Dockside Deli")
        request_headers = headers(BUYER, customer_id=other.id)

        response = await client.post(
            f"{API}/orders",
            json=order_body(customer, product, delivery_date),
            headers=request_headers,
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_request_validation(self, client, customer, product, delivery_date):
        body = order_body(customer, product, delivery_date, quantity=0)

        response = await client.post(f"{API}/orders", json=body, headers=headers(SALES))

        assert response.status_code == 422
        assert response.json()["error"] == "ORDER_VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_area_tag(self, client, customer, product, delivery_date):
        body = order_body(customer, product, delivery_date)
        body["delivery_address"]["area_tag"] = "central"

        response = await client.post(f"{API}/orders", json=body, headers=headers(SALES))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_past_delivery_date(self, client, customer, product, delivery_date):
        body = order_body(customer, product, delivery_date)
        body["delivery_date"] = "2020-01-06"

        response = await client.post(f"{API}/orders", json=body, headers=headers(SALES))

        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_DELIVERY_DATE"

    @pytest.mark.asyncio
    async def test_same_day_delivery_date(self, client, customer, product, delivery_date):
        body = order_body(customer, product, delivery_date)
        body["delivery_date"] = business_today(get_settings()).isoformat()

        response = await client.post(f"{API}/orders", json=body, headers=headers(SALES))

        assert response.status_code == 422
        assert response.json()["error"] == "INVALID_DELIVERY_DATE"

    @pytest.mark.asyncio
    async def test_cutoff_info(self, client):
        today = business_today(get_settings())

        response = await client.get(
            f"{API}/orders/cutoff-info", params={"area_tag": "north"}, headers=headers(SALES)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["area_tag"] == "north"
        assert body["cutoff_time"] == "14:00:00"
        assert body["timezone"] == "Australia/Sydney"
        earliest = date.fromisoformat(body["earliest_delivery_date"])
        assert today < earliest <= today + timedelta(days=3)
        assert earliest.weekday() != 6

    @pytest.mark.asyncio
    async def test_cutoff_info_unknown_area(self, client):
        response = await client.get(
            f"{API}/orders/cutoff-info", params={"area_tag": "central"}, headers=headers(SALES)
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_backorder_decision(self, client, customer, product, delivery_date):
        order = await place_order(client, customer, product, delivery_date, quantity=25)

        response = await client.post(
            f"{API}/orders/{order['id']}/backorder",
            json={
                "decision": "partial_approve",
                "version": 1,
                "approved_quantities": {product["id"]: 20},
            },
            headers=headers(MANAGER),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "confirmed"
        assert body["backorder_status"] == "partial_approved"
        assert body["line_items"][0]["quantity"] == 20

    @pytest.mark.asyncio
    async def test_partial_approval_needs_quantities(
        self, client, customer, product, delivery_date
    ):
        order = await place_order(client, customer, product, delivery_date, quantity=25)

        response = await client.post(
            f"{API}/orders/{order['id']}/backorder",
            json={"decision": "partial_approve", "version": 1},
            headers=headers(MANAGER),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_packing_flow(self, client, customer, product, delivery_date):
        order = await place_order(client, customer, product, delivery_date)
        base = f"{API}/orders/{order['id']}"

        await client.post(
            f"{base}/transitions",
            json={"target_status": "confirmed", "version": 1},
            headers=headers(MANAGER),
        )
        await client.post(
            f"{base}/transitions",
            json={"target_status": "packing", "version": 2},
            headers=headers(PACKER),
        )
        incomplete = await client.post(
            f"{base}/transitions",
            json={"target_status": "ready_for_delivery", "version": 3},
            headers=headers(PACKER),
        )
        packed = await client.post(
            f"{base}/packed-items",
            json={"product_id": product["id"], "version": 3},
            headers=headers(PACKER),
        )
        ready = await client.post(
            f"{base}/transitions",
            json={"target_status": "ready_for_delivery", "version": 4},
            headers=headers(PACKER),
        )

        assert incomplete.status_code == 422
        assert incomplete.json()["error"] == "INCOMPLETE_PACKING"
        assert packed.json()["packed_skus"] == ["BEANS"]
        assert ready.status_code == 200
        assert ready.json()["status"] == "ready_for_delivery"
        assert ready.json()["packed_by"] == PACKER.actor_id


# ============================================================================
# Inventory
# ============================================================================


class TestInventory:
    @pytest.mark.asyncio
    async def test_register_product(self, product):
        assert product["sku"] == "BEANS"
        assert product["current_stock"] == 20

    @pytest.mark.asyncio
    async def test_register_requires_management(self, client):
        response = await client.post(
            f"{API}/inventory/products",
            json={"sku": "milk", "name": "Milk"},
            headers=headers(SALES),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_adjust_and_read_history(self, client, product):
        adjusted = await client.post(
            f"{API}/inventory/products/{product['id']}/adjustments",
            json={"delta": -3, "reason": "damaged_goods", "notes": "Crushed crate"},
            headers=headers(MANAGER),
        )
        history = await client.get(
            f"{API}/inventory/products/{product['id']}/transactions",
            headers=headers(MANAGER),
        )

        assert adjusted.status_code == 201
        assert adjusted.json()["previous_stock"] == 20
        assert adjusted.json()["new_stock"] == 17
        assert adjusted.json()["adjustment_reason"] == "damaged_goods"

        body = history.json()
        assert body["product"]["current_stock"] == 17
        assert body["ledger_total"] == 17
        assert body["batch_total"] == 17
        assert body["is_consistent"] is True
        assert len(body["transactions"]) == 2

    @pytest.mark.asyncio
    async def test_received_batch_and_expiring_list(self, client, product):
        expiry = business_today(get_settings()) + timedelta(days=2)
        received = await client.post(
            f"{API}/inventory/products/{product['id']}/adjustments",
            json={
                "delta": 6,
                "reason": "stock_received",
                "cost_per_unit": 210,
                "expiry_date": expiry.isoformat(),
            },
            headers=headers(MANAGER),
        )
        batches = await client.get(
            f"{API}/inventory/products/{product['id']}/batches",
            headers=headers(MANAGER),
        )
        expiring = await client.get(
            f"{API}/inventory/batches/expiring", headers=headers(MANAGER)
        )

        assert received.status_code == 201
        body = batches.json()
        assert [b["quantity_remaining"] for b in body["batches"]] == [20, 6]
        assert body["batches"][1]["cost_per_unit"] == 210
        assert body["stock_value"] == 6 * 210
        assert [b["expiry_date"] for b in expiring.json()] == [expiry.isoformat()]

    @pytest.mark.asyncio
    async def test_batch_details_on_negative_delta_rejected(self, client, product):
        response = await client.post(
            f"{API}/inventory/products/{product['id']}/adjustments",
            json={"delta": -2, "reason": "damaged_goods", "cost_per_unit": 100},
            headers=headers(MANAGER),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_zero_delta_rejected(self, client, product):
        response = await client.post(
            f"{API}/inventory/products/{product['id']}/adjustments",
            json={"delta": 0, "reason": "stock_count_correction"},
            headers=headers(MANAGER),
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_adjustment_below_zero(self, client, product):
        response = await client.post(
            f"{API}/inventory/products/{product['id']}/adjustments",
            json={"delta": -21, "reason": "expired_stock"},
            headers=headers(MANAGER),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INSUFFICIENT_STOCK"

    @pytest.mark.asyncio
    async def test_unknown_product(self, client):
        response = await client.get(
            f"{API}/inventory/products/{uuid.uuid4()}/transactions",
            headers=headers(MANAGER),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "PRODUCT_NOT_FOUND"


# ============================================================================
# Routes
# ============================================================================


class TestRoutes:
    @pytest.mark.asyncio
    async def test_recompute_and_views(self, client, customer, product, delivery_date):
        ids = []
        for area in ("east", "north"):
            order = await place_order(
                client, customer, product, delivery_date, quantity=1, area=area
            )
            await client.post(
                f"{API}/orders/{order['id']}/transitions",
                json={"target_status": "confirmed", "version": 1},
                headers=headers(MANAGER),
            )
            ids.append(order["id"])
        day = delivery_date.isoformat()

        recompute = await client.post(
            f"{API}/routes/{day}/recompute", headers=headers(MANAGER)
        )
        delivery = await client.get(f"{API}/routes/{day}/delivery", headers=headers(MANAGER))
        packing = await client.get(f"{API}/routes/{day}/packing", headers=headers(PACKER))

        assert recompute.status_code == 200
        result = recompute.json()
        assert result["recomputed"] is True
        assert result["succeeded_areas"] == ["north", "east"]
        assert result["partial_failure"] is False

        east_id, north_id = ids
        assert [o["id"] for o in delivery.json()["orders"]] == [north_id, east_id]
        assert [o["id"] for o in packing.json()["orders"]] == [east_id, north_id]
        assert delivery.json()["loading"] is False

    @pytest.mark.asyncio
    async def test_forced_recompute_body(self, client, delivery_date):
        response = await client.post(
            f"{API}/routes/{delivery_date.isoformat()}/recompute",
            json={"force": True},
            headers=headers(MANAGER),
        )

        assert response.status_code == 200
        assert response.json()["routes"] == []

    @pytest.mark.asyncio
    async def test_customers_cannot_recompute(self, client, customer, delivery_date):
        response = await client.post(
            f"{API}/routes/{delivery_date.isoformat()}/recompute",
            headers=headers(BUYER, customer_id=customer.id),
        )

        assert response.status_code == 403
