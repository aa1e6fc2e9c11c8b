# order_service/lifecycle.py
import json
import math
import uuid
import logging

from databases import Database
from sqlalchemy import update

from order_service.assignment import AssignmentCoordinator
from order_service.database import load_order, utcnow
from order_service.errors import (
    Conflict, Forbidden, GracePeriodActive, InsufficientFunds, RestaurantTimeout, ValidationError,
)
from order_service.escrow import EscrowEngine, is_awaiting_acceptance, order_age_seconds
from order_service.models import OrderStatus, PaymentMethod, PaymentStatus, orders
from order_service.pricing import CommissionPolicy, compute_breakdown
from order_service.schemas import (
    AcceptOrder, MarkReady, OrderCreate, OrderView, PickUpOrder, RefundOrder, ReleaseEscrow,
    StartDelivery, StartPreparing,
)
from order_service.state_machines import STATUS_TIMESTAMPS, check_order_transition
from order_service.wallet import WalletLedger

logger = logging.getLogger("order-service.lifecycle")
logger.setLevel(logging.INFO)

# Statuses each party may request through the status endpoints
RESTAURANT_COMMANDS = {
    OrderStatus.ACCEPTED: AcceptOrder,
    OrderStatus.PREPARING: StartPreparing,
    OrderStatus.READY: MarkReady,
}
DRIVER_COMMANDS = {
    OrderStatus.PICKED_UP: PickUpOrder,
    OrderStatus.DELIVERING: StartDelivery,
    OrderStatus.DELIVERED: ReleaseEscrow,
}


def restaurant_command(status: OrderStatus, restaurant_id: str):
    if status not in RESTAURANT_COMMANDS:
        raise ValidationError(f"Restaurants cannot set status {status.value}")
    return RESTAURANT_COMMANDS[status](restaurant_id=restaurant_id)


def driver_command(status: OrderStatus, driver_id: str):
    if status not in DRIVER_COMMANDS:
        raise ValidationError(f"Drivers cannot set status {status.value}")
    return DRIVER_COMMANDS[status](driver_id=driver_id)


class OrderLifecycle:
    def __init__(self, database: Database, escrow: EscrowEngine, ledger: WalletLedger,
                 assignments: AssignmentCoordinator, notifier, config, policy: CommissionPolicy,
                 clock=utcnow):
        self.database = database
        self.escrow = escrow
        self.ledger = ledger
        self.assignments = assignments
        self.notifier = notifier
        self.policy = policy
        self.clock = clock
        self.grace_seconds = config.GRACE_PERIOD_SECONDS
        self.timeout_seconds = config.RESTAURANT_TIMEOUT_SECONDS

    async def _emit(self, event_type: str, data: dict, trace_id: str = None):
        if self.notifier is not None:
            await self.notifier.emit(event_type, data, trace_id)

    # ------------------------- reads -------------------------
    async def get_order(self, order_id: str) -> OrderView:
        order = await load_order(self.database, order_id)
        order["items"] = json.loads(order["items"])
        return OrderView(**order)

    # ------------------------- checkout -------------------------
    async def place_order(self, customer_id: str, body: OrderCreate, trace_id: str = None) -> OrderView:
        breakdown = compute_breakdown(body.items_subtotal, body.delivery_fee, self.policy, body.commission_rate)
        if breakdown.total_price <= 0:
            raise ValidationError("Order total must be greater than 0")

        if body.payment_method == PaymentMethod.WALLET:
            check = await self.ledger.check_sufficient_balance(customer_id, breakdown.total_price)
            if not check.has_sufficient_balance:
                raise InsufficientFunds(check.current_balance, breakdown.total_price)

        now = self.clock()
        order_id = str(uuid.uuid4())
        await self.database.execute(
            orders.insert().values(
                id=order_id,
                customer_id=customer_id,
                restaurant_id=body.restaurant_id,
                driver_id=None,
                status=OrderStatus.PENDING.value,
                payment_status=PaymentStatus.PENDING.value,
                payment_method=body.payment_method.value,
                items=json.dumps([line.model_dump(mode="json") for line in body.items]),
                items_subtotal=breakdown.items_subtotal,
                delivery_fee=breakdown.delivery_fee,
                total_price=breakdown.total_price,
                commission_rate=breakdown.commission_rate,
                restaurant_commission=breakdown.restaurant_commission,
                delivery_commission=breakdown.delivery_commission,
                platform_earnings=breakdown.platform_earnings,
                driver_earning=breakdown.driver_earning,
                refund_requires_manual_processing=False,
                created_at=now,
                updated_at=now,
            )
        )

        logger.info(f"[TRACE {trace_id}] ✅ Order {order_id} created by {customer_id} total={breakdown.total_price}")
        await self._emit("order.created", {
            "order_id": order_id,
            "customer_id": customer_id,
            "restaurant_id": body.restaurant_id,
            "total_price": breakdown.total_price,
            "payment_method": body.payment_method.value,
        }, trace_id)
        return await self.get_order(order_id)

    # ------------------------- restaurant -------------------------
    async def accept_order(self, order_id: str, restaurant_id: str, trace_id: str = None) -> OrderView:
        order = await load_order(self.database, order_id)
        if order["restaurant_id"] != restaurant_id:
            raise Forbidden("Order does not belong to this restaurant")
        check_order_transition(order["status"], OrderStatus.ACCEPTED)

        age = order_age_seconds(order, self.clock())
        if age < self.grace_seconds:
            raise GracePeriodActive(
                f"Customer can still cancel for free; accept in {math.ceil(self.grace_seconds - age)}s"
            )
        if age > self.timeout_seconds and is_awaiting_acceptance(order):
            raise RestaurantTimeout("Restaurant acceptance window has closed")

        if order["payment_status"] == PaymentStatus.PENDING.value:
            await self.escrow.process_escrow_payment(order_id, trace_id)

        now = self.clock()
        rows = await self.database.fetch_all(
            update(orders)
            .where(
                orders.c.id == order_id,
                orders.c.status == OrderStatus.PENDING.value,
                orders.c.accepted_at.is_(None),
                orders.c.payment_status == PaymentStatus.ESCROWED.value,
            )
            .values(status=OrderStatus.ACCEPTED.value, accepted_at=now, updated_at=now)
            .returning(orders.c.id)
        )
        if not rows:
            raise Conflict("Order is no longer awaiting acceptance")

        logger.info(f"[TRACE {trace_id}] 👨‍🍳 Order {order_id} accepted by restaurant {restaurant_id}")
        await self._emit("order.accepted", {
            "order_id": order_id,
            "customer_id": order["customer_id"],
            "restaurant_id": restaurant_id,
        }, trace_id)
        return await self.get_order(order_id)

    async def _advance(self, order_id: str, requested: OrderStatus, actor_column: str, actor_id: str,
                       trace_id: str = None) -> OrderView:
        order = await load_order(self.database, order_id)
        if order[actor_column] != actor_id:
            raise Forbidden(f"Order is not assigned to {actor_column.replace('_id', '')} {actor_id}")
        current = OrderStatus(order["status"])
        check_order_transition(current, requested)

        now = self.clock()
        values = {"status": requested.value, "updated_at": now}
        if requested in STATUS_TIMESTAMPS:
            values[STATUS_TIMESTAMPS[requested]] = now

        rows = await self.database.fetch_all(
            update(orders)
            .where(orders.c.id == order_id, orders.c.status == current.value)
            .values(**values)
            .returning(orders.c.id)
        )
        if not rows:
            raise Conflict(f"Order {order_id} changed status concurrently; retry")

        logger.info(f"[TRACE {trace_id}] 🔄 Order {order_id} {current.value} → {requested.value}")
        await self._emit("order.status_changed", {
            "order_id": order_id,
            "customer_id": order["customer_id"],
            "previous_status": current.value,
            "status": requested.value,
        }, trace_id)
        return await self.get_order(order_id)

    async def start_preparing(self, order_id: str, restaurant_id: str, trace_id: str = None) -> OrderView:
        return await self._advance(order_id, OrderStatus.PREPARING, "restaurant_id", restaurant_id, trace_id)

    async def mark_ready(self, order_id: str, restaurant_id: str, trace_id: str = None) -> OrderView:
        return await self._advance(order_id, OrderStatus.READY, "restaurant_id", restaurant_id, trace_id)

    # ------------------------- driver -------------------------
    async def pick_up(self, order_id: str, driver_id: str, trace_id: str = None) -> OrderView:
        return await self._advance(order_id, OrderStatus.PICKED_UP, "driver_id", driver_id, trace_id)

    async def start_delivery(self, order_id: str, driver_id: str, trace_id: str = None) -> OrderView:
        return await self._advance(order_id, OrderStatus.DELIVERING, "driver_id", driver_id, trace_id)

    async def deliver(self, order_id: str, driver_id: str, trace_id: str = None):
        result = await self.escrow.release_escrow_on_delivery(order_id, driver_id, trace_id)
        try:
            await self.assignments.complete_assignment(order_id, driver_id)
        except Exception:
            # reconciler's complete_delivered_assignments finishes this later
            logger.exception(f"[TRACE {trace_id}] Could not complete assignment for delivered order {order_id}")
        return result

    async def cancel(self, order_id: str, reason: str, trace_id: str = None):
        return await self.escrow.cancel_order_with_refund(order_id, reason, trace_id)

    # ------------------------- commands -------------------------
    async def apply(self, order_id: str, command, trace_id: str = None) -> OrderView:
        """Run one typed transition command and return the order as it now stands."""
        if isinstance(command, AcceptOrder):
            return await self.accept_order(order_id, command.restaurant_id, trace_id)
        if isinstance(command, StartPreparing):
            return await self.start_preparing(order_id, command.restaurant_id, trace_id)
        if isinstance(command, MarkReady):
            return await self.mark_ready(order_id, command.restaurant_id, trace_id)
        if isinstance(command, PickUpOrder):
            return await self.pick_up(order_id, command.driver_id, trace_id)
        if isinstance(command, StartDelivery):
            return await self.start_delivery(order_id, command.driver_id, trace_id)
        if isinstance(command, ReleaseEscrow):
            await self.deliver(order_id, command.driver_id, trace_id)
        elif isinstance(command, RefundOrder):
            await self.cancel(order_id, command.reason, trace_id)
        else:
            raise ValidationError(f"Unknown order command: {command!r}")
        return await self.get_order(order_id)
