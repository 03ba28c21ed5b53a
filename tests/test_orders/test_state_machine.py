"""
Test suite for the order state machine.

Runs every transition through FulfillmentService against a real SQLite
database: lifecycle bookkeeping, per-edge guards, role and version checks,
stock side effects and the events handed to the sink after commit.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from fulfillment_engine.core.actor import Actor, ActorRole
from fulfillment_engine.core.exceptions import (
    CreditLimitExceeded,
    CustomerNotFound,
    IncompletePacking,
    InvalidDeliveryDate,
    InvalidTransition,
    ManagerApprovalRequired,
    MissingDriver,
    MissingProof,
    MissingReturnReason,
    OrderNotFound,
    OrderValidationError,
    TransitionNotPermitted,
    VersionConflict,
)
from fulfillment_engine.database.models import TransactionType
from fulfillment_engine.services.orders.enums import OrderStatus
from fulfillment_engine.services.orders.validation import business_today
from tests.conftest import DRIVER, MANAGER, PACKER, SALES


async def pack_everything(harness, order):
    """Mark every line packed and return the order at its latest version."""
    for item in order.line_items:
        order = await harness.call(
            "mark_item_packed", order.id, item.product_id, PACKER, order.version
        )
    return order


async def ready_order(harness, customer, lines):
    order = await harness.packing_order(customer, lines)
    order = await pack_everything(harness, order)
    return await harness.transition(order, OrderStatus.READY_FOR_DELIVERY, actor=PACKER)


async def dispatched_order(harness, customer, lines):
    order = await ready_order(harness, customer, lines)
    return await harness.transition(
        order, OrderStatus.OUT_FOR_DELIVERY, actor=DRIVER, driver_id="driver-7"
    )


# ============================================================================
# Order Creation
# ============================================================================


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order_with_totals(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10, unit_price=250)
        milk = await harness.add_product("MILK", stock=10, unit_price=199)

        result = await harness.create_order(customer, [(beans, 3), (milk, 7)])
        order = result.order

        assert result.backorder_pending is False
        assert order.status == OrderStatus.PENDING
        assert order.version == 1
        assert order.subtotal == 2143
        assert order.tax_amount == 214
        assert order.total_amount == 2357
        assert [item.sku for item in order.line_items] == ["BEANS", "MILK"]
        assert order.order_number.startswith("ORD-")
        assert order.area_tag == "north"

    @pytest.mark.asyncio
    async def test_creation_does_not_touch_stock(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)

        await harness.create_order(customer, [(beans, 4)])

        assert await harness.stock(beans.id) == 10

    @pytest.mark.asyncio
    async def test_records_initial_history_and_event(self, harness, customer, sink):
        beans = await harness.add_product("BEANS", stock=10)

        result = await harness.create_order(customer, [(beans, 1)])
        order = await harness.reload(result.order.id)

        assert len(order.status_history) == 1
        assert order.status_history[0].from_status is None
        assert order.status_history[0].to_status == OrderStatus.PENDING
        assert sink.event_types() == ["order.created"]
        _, payload = sink.notifications[0]
        assert payload["idempotency_key"] == f"order.created:{order.id}"

    @pytest.mark.asyncio
    async def test_rejects_sunday_delivery(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        today = business_today(harness.settings)
        sunday = today + timedelta(days=(6 - today.weekday()) % 7 or 7)

        with pytest.raises(InvalidDeliveryDate):
            await harness.create_order(customer, [(beans, 1)], delivery_date=sunday)

    @pytest.mark.asyncio
    async def test_rejects_past_delivery_date(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        yesterday = business_today(harness.settings) - timedelta(days=1)

        with pytest.raises(InvalidDeliveryDate):
            await harness.create_order(customer, [(beans, 1)], delivery_date=yesterday)

    @pytest.mark.asyncio
    async def test_rejects_empty_order(self, harness, customer):
        with pytest.raises(OrderValidationError):
            await harness.create_order(customer, [])

    @pytest.mark.asyncio
    async def test_rejects_unknown_area(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)

        with pytest.raises(OrderValidationError):
            await harness.create_order(
                customer, [(beans, 1)], area="central", coordinates=(-33.8, 151.2)
            )

    @pytest.mark.asyncio
    async def test_rejects_inactive_customer(self, harness):
        closed = await harness.add_customer("Closed Cafe", is_active=False)
        beans = await harness.add_product("BEANS", stock=10)

        with pytest.raises(CustomerNotFound):
            await harness.create_order(closed, [(beans, 1)])

    @pytest.mark.asyncio
    async def test_customer_cannot_order_for_another_customer(self, harness, customer):
        other = await harness.add_customer("Other Deli")
        beans = await harness.add_product("BEANS", stock=10)
        actor = Actor(actor_id="buyer-1", role=ActorRole.CUSTOMER, customer_id=other.id)

        with pytest.raises(TransitionNotPermitted):
            await harness.create_order(customer, [(beans, 1)], actor=actor)

    @pytest.mark.asyncio
    async def test_customer_can_order_for_themselves(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        actor = Actor(
            actor_id="buyer-1", role=ActorRole.CUSTOMER, customer_id=customer.id
        )

        result = await harness.create_order(customer, [(beans, 1)], actor=actor)

        assert result.order.created_by == "buyer-1"

    @pytest.mark.asyncio
    async def test_packer_cannot_place_orders(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)

        with pytest.raises(TransitionNotPermitted):
            await harness.create_order(customer, [(beans, 1)], actor=PACKER)


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, harness, customer, sink):
        beans = await harness.add_product("BEANS", stock=10, unit_price=250)
        milk = await harness.add_product("MILK", stock=10, unit_price=199)
        created = (await harness.create_order(customer, [(beans, 3), (milk, 7)])).order

        order = await harness.transition(created, OrderStatus.CONFIRMED, actor=SALES)
        assert order.version == 2
        assert await harness.stock(beans.id) == 7
        assert await harness.stock(milk.id) == 3

        order = await harness.transition(order, OrderStatus.PACKING, actor=PACKER)
        assert order.packing_started_at is not None

        order = await pack_everything(harness, order)
        assert order.version == 5
        assert sorted(order.packed_skus) == ["BEANS", "MILK"]

        order = await harness.transition(
            order, OrderStatus.READY_FOR_DELIVERY, actor=PACKER, packing_notes="2 crates"
        )
        assert order.packed_by == PACKER.actor_id
        assert order.packing_notes == "2 crates"

        order = await harness.transition(
            order, OrderStatus.OUT_FOR_DELIVERY, actor=DRIVER, driver_id="driver-7"
        )
        assert order.driver_id == "driver-7"
        assert order.driver_assigned_at is not None

        order = await harness.transition(
            order, OrderStatus.DELIVERED, actor=DRIVER, proof_of_delivery="POD-123"
        )
        assert order.version == 8
        assert order.proof_of_delivery == "POD-123"
        assert order.delivered_at is not None

        reloaded = await harness.reload(order.id)
        assert [h.to_status for h in reloaded.status_history] == [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PACKING,
            OrderStatus.READY_FOR_DELIVERY,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        assert reloaded.status_history[-1].actor_id == DRIVER.actor_id
        assert reloaded.total_amount == reloaded.subtotal + reloaded.tax_amount

        assert sink.event_types()[-6:] == [
            "order.created",
            "order.confirmed",
            "order.packing",
            "order.ready_for_delivery",
            "order.out_for_delivery",
            "order.delivered",
        ]
        assert sink.accounting == [
            (str(order.id), f"accounting:{order.id}:confirmed"),
            (str(order.id), f"accounting:{order.id}:delivered"),
        ]

    @pytest.mark.asyncio
    async def test_notification_keys_carry_new_version(self, harness, customer, sink):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.confirmed_order(customer, [(beans, 1)])

        _, payload = sink.notifications[-1]
        assert payload["idempotency_key"] == f"order.confirmed:{order.id}:2"
        assert payload["version"] == 2
        assert payload["from_status"] == "pending"

    @pytest.mark.asyncio
    async def test_reverting_packing_to_confirmed_does_not_resync_accounting(
        self, harness, customer, sink
    ):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.packing_order(customer, [(beans, 2)])

        order = await harness.transition(order, OrderStatus.CONFIRMED, actor=MANAGER)

        assert order.status == OrderStatus.CONFIRMED
        assert order.packed_skus == []
        assert len(sink.accounting) == 1
        assert await harness.stock(beans.id) == 8

    @pytest.mark.asyncio
    async def test_returned_delivery_records_reason(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await dispatched_order(harness, customer, [(beans, 1)])

        order = await harness.transition(
            order,
            OrderStatus.READY_FOR_DELIVERY,
            actor=DRIVER,
            return_reason="Customer closed",
        )

        assert order.status == OrderStatus.READY_FOR_DELIVERY
        assert order.return_reason == "Customer closed"


# ============================================================================
# Edge and Role Validation
# ============================================================================


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_edge_leaves_order_untouched(self, harness, customer, sink):
        beans = await harness.add_product("BEANS", stock=10)
        order = (await harness.create_order(customer, [(beans, 1)])).order

        with pytest.raises(InvalidTransition) as exc_info:
            await harness.transition(order, OrderStatus.DELIVERED)

        assert exc_info.value.code == "INVALID_TRANSITION"
        reloaded = await harness.reload(order.id)
        assert reloaded.status == OrderStatus.PENDING
        assert reloaded.version == 1
        assert len(reloaded.status_history) == 1
        assert sink.event_types() == ["order.created"]

    @pytest.mark.asyncio
    async def test_cannot_move_back_to_pending(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.confirmed_order(customer, [(beans, 1)])

        with pytest.raises(InvalidTransition):
            await harness.transition(order, OrderStatus.PENDING)

    @pytest.mark.asyncio
    async def test_delivered_is_terminal(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await dispatched_order(harness, customer, [(beans, 1)])
        order = await harness.transition(
            order, OrderStatus.DELIVERED, actor=DRIVER, proof_of_delivery="POD-1"
        )

        with pytest.raises(InvalidTransition):
            await harness.transition(order, OrderStatus.CANCELLED, manager_approved=True)

    @pytest.mark.asyncio
    async def test_driver_cannot_confirm(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = (await harness.create_order(customer, [(beans, 3)])).order

        with pytest.raises(TransitionNotPermitted):
            await harness.transition(order, OrderStatus.CONFIRMED, actor=DRIVER)

        assert await harness.stock(beans.id) == 10
        assert (await harness.reload(order.id)).version == 1

    @pytest.mark.asyncio
    async def test_customer_may_cancel_own_pending_order(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = (await harness.create_order(customer, [(beans, 3)])).order
        owner = Actor(actor_id="buyer-1", role=ActorRole.CUSTOMER, customer_id=customer.id)
        stranger = Actor(
            actor_id="buyer-2", role=ActorRole.CUSTOMER, customer_id=uuid.uuid4()
        )

        with pytest.raises(TransitionNotPermitted):
            await harness.transition(order, OrderStatus.CANCELLED, actor=stranger)

        order = await harness.transition(order, OrderStatus.CANCELLED, actor=owner)
        assert order.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_order(self, harness):
        with pytest.raises(OrderNotFound):
            await harness.call(
                "transition", uuid.uuid4(), OrderStatus.CONFIRMED, MANAGER, 1
            )


# ============================================================================
# Optimistic Concurrency
# ============================================================================


class TestVersionContract:
    @pytest.mark.asyncio
    async def test_stale_version_is_rejected_before_side_effects(
        self, harness, customer, sink
    ):
        beans = await harness.add_product("BEANS", stock=10)
        order = (await harness.create_order(customer, [(beans, 3)])).order

        with pytest.raises(VersionConflict) as exc_info:
            await harness.transition(order, OrderStatus.CONFIRMED, version=7)

        assert exc_info.value.context["current_version"] == 1
        assert exc_info.value.retryable is True
        assert await harness.stock(beans.id) == 10
        assert sink.accounting == []

    @pytest.mark.asyncio
    async def test_old_version_after_transition(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.confirmed_order(customer, [(beans, 3)])

        with pytest.raises(VersionConflict):
            await harness.transition(order, OrderStatus.PACKING, actor=PACKER, version=1)

        reloaded = await harness.reload(order.id)
        assert reloaded.status == OrderStatus.CONFIRMED
        assert reloaded.version == 2

    @pytest.mark.asyncio
    async def test_concurrent_transitions_with_same_version(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.confirmed_order(customer, [(beans, 3)])

        results = await asyncio.gather(
            harness.transition(order, OrderStatus.PACKING, actor=PACKER),
            harness.transition(
                order, OrderStatus.CANCELLED, actor=SALES, cancellation_reason="Dupe"
            ),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], VersionConflict)

        reloaded = await harness.reload(order.id)
        assert reloaded.version == 3
        assert len(reloaded.status_history) == 3
        expected_stock = 10 if reloaded.status == OrderStatus.CANCELLED else 7
        assert await harness.stock(beans.id) == expected_stock


# ============================================================================
# Guards
# ============================================================================


class TestGuards:
    @pytest.mark.asyncio
    async def test_ready_requires_every_item_packed(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        milk = await harness.add_product("MILK", stock=10)
        order = await harness.packing_order(customer, [(beans, 1), (milk, 1)])
        order = await harness.call(
            "mark_item_packed", order.id, beans.id, PACKER, order.version
        )

        with pytest.raises(IncompletePacking) as exc_info:
            await harness.transition(order, OrderStatus.READY_FOR_DELIVERY, actor=PACKER)

        assert exc_info.value.context["unpacked"] == ["MILK"]
        reloaded = await harness.reload(order.id)
        assert reloaded.status == OrderStatus.PACKING
        assert reloaded.version == order.version

    @pytest.mark.asyncio
    async def test_packing_same_item_twice_is_idempotent(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.packing_order(customer, [(beans, 1)])

        order = await harness.call(
            "mark_item_packed", order.id, beans.id, PACKER, order.version
        )
        order = await harness.call(
            "mark_item_packed", order.id, beans.id, PACKER, order.version
        )

        assert order.packed_skus == ["BEANS"]

    @pytest.mark.asyncio
    async def test_cannot_pack_outside_packing(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.confirmed_order(customer, [(beans, 1)])

        with pytest.raises(OrderValidationError):
            await harness.call(
                "mark_item_packed", order.id, beans.id, PACKER, order.version
            )

    @pytest.mark.asyncio
    async def test_dispatch_requires_driver(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await ready_order(harness, customer, [(beans, 1)])

        with pytest.raises(MissingDriver):
            await harness.transition(order, OrderStatus.OUT_FOR_DELIVERY, actor=DRIVER)

    @pytest.mark.asyncio
    async def test_assigned_driver_satisfies_dispatch(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await ready_order(harness, customer, [(beans, 1)])
        order = await harness.call(
            "assign_driver", order.id, "driver-9", MANAGER, order.version
        )

        order = await harness.transition(order, OrderStatus.OUT_FOR_DELIVERY, actor=DRIVER)

        assert order.driver_id == "driver-9"

    @pytest.mark.asyncio
    async def test_delivery_requires_proof(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await dispatched_order(harness, customer, [(beans, 1)])

        with pytest.raises(MissingProof):
            await harness.transition(order, OrderStatus.DELIVERED, actor=DRIVER)

    @pytest.mark.asyncio
    async def test_return_requires_reason(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await dispatched_order(harness, customer, [(beans, 1)])

        with pytest.raises(MissingReturnReason):
            await harness.transition(
                order, OrderStatus.READY_FOR_DELIVERY, actor=DRIVER
            )


# ============================================================================
# Cancellation
# ============================================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_restores_deducted_stock(self, harness, customer, sink):
        beans = await harness.add_product("BEANS", stock=10)
        milk = await harness.add_product("MILK", stock=10)
        order = await harness.confirmed_order(customer, [(beans, 3), (milk, 5)])
        assert await harness.stock(beans.id) == 7
        assert await harness.stock(milk.id) == 5

        order = await harness.transition(
            order, OrderStatus.CANCELLED, actor=SALES, cancellation_reason="Closed"
        )

        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "Closed"
        assert await harness.stock(beans.id) == 10
        assert await harness.stock(milk.id) == 10
        assert [t.type for t in await harness.transactions(beans.id)] == [
            TransactionType.ADJUSTMENT,
            TransactionType.SALE,
            TransactionType.RETURN,
        ]
        assert (str(order.id), f"accounting:{order.id}:cancelled") in sink.accounting

    @pytest.mark.asyncio
    async def test_cancel_pending_moves_no_stock(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = (await harness.create_order(customer, [(beans, 3)])).order

        await harness.transition(order, OrderStatus.CANCELLED, actor=SALES)

        assert await harness.stock(beans.id) == 10
        assert len(await harness.transactions(beans.id)) == 1

    @pytest.mark.asyncio
    async def test_cancelling_packing_order_needs_approval(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await harness.packing_order(customer, [(beans, 4)])

        with pytest.raises(ManagerApprovalRequired):
            await harness.transition(order, OrderStatus.CANCELLED, actor=SALES)

        order = await harness.call(
            "approve_cancellation", order.id, MANAGER, order.version
        )
        assert order.manager_approved_cancellation is True

        order = await harness.transition(order, OrderStatus.CANCELLED, actor=SALES)
        assert order.status == OrderStatus.CANCELLED
        assert await harness.stock(beans.id) == 10

    @pytest.mark.asyncio
    async def test_manager_may_approve_inline(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await ready_order(harness, customer, [(beans, 2)])

        order = await harness.transition(
            order, OrderStatus.CANCELLED, actor=MANAGER, manager_approved=True
        )

        assert order.status == OrderStatus.CANCELLED
        assert order.manager_approved_cancellation is True
        assert order.packing_sequence is None
        assert await harness.stock(beans.id) == 10

    @pytest.mark.asyncio
    async def test_sales_cannot_self_approve(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await ready_order(harness, customer, [(beans, 2)])

        with pytest.raises(TransitionNotPermitted):
            await harness.transition(
                order, OrderStatus.CANCELLED, actor=SALES, manager_approved=True
            )

    @pytest.mark.asyncio
    async def test_only_management_cancels_dispatched_orders(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=10)
        order = await dispatched_order(harness, customer, [(beans, 2)])

        with pytest.raises(TransitionNotPermitted):
            await harness.transition(order, OrderStatus.CANCELLED, actor=SALES)

        order = await harness.transition(
            order, OrderStatus.CANCELLED, actor=MANAGER, manager_approved=True
        )
        assert order.status == OrderStatus.CANCELLED
        assert await harness.stock(beans.id) == 10


# ============================================================================
# Credit Limit
# ============================================================================


class TestCreditLimit:
    @pytest.mark.asyncio
    async def test_confirm_beyond_credit_limit_fails(self, harness):
        bistro = await harness.add_customer("Tight Bistro", credit_limit=3000)
        beans = await harness.add_product("BEANS", stock=100, unit_price=1000)

        await harness.confirmed_order(bistro, [(beans, 2)])
        second = (await harness.create_order(bistro, [(beans, 1)])).order

        with pytest.raises(CreditLimitExceeded) as exc_info:
            await harness.transition(second, OrderStatus.CONFIRMED)

        assert exc_info.value.context["outstanding"] == 2200
        assert exc_info.value.context["order_total"] == 1100
        assert (await harness.reload(second.id)).status == OrderStatus.PENDING
        assert await harness.stock(beans.id) == 98

    @pytest.mark.asyncio
    async def test_pending_orders_do_not_count(self, harness):
        bistro = await harness.add_customer("Tight Bistro", credit_limit=3000)
        beans = await harness.add_product("BEANS", stock=100, unit_price=1000)
        await harness.create_order(bistro, [(beans, 2)])
        second = (await harness.create_order(bistro, [(beans, 2)])).order

        order = await harness.transition(second, OrderStatus.CONFIRMED)

        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_no_limit_means_unlimited(self, harness, customer):
        beans = await harness.add_product("BEANS", stock=1000, unit_price=100000)

        order = await harness.confirmed_order(customer, [(beans, 500)])

        assert order.status == OrderStatus.CONFIRMED
