# order_service/escrow.py
import math
import logging
from datetime import datetime

from databases import Database
from sqlalchemy import update

from order_service.database import load_order, utcnow
from order_service.errors import (
    CancellationNotAllowed, Conflict, Forbidden, InvalidPaymentState, ServiceError,
)
from order_service.metrics import ESCROW_OPERATIONS
from order_service.models import OrderStatus, OwnerKind, PaymentMethod, PaymentStatus, TransactionType, orders
from order_service.pricing import ZERO, to_money
from order_service.schemas import (
    CancellationCheck, EscrowResult, RefundResult, ReleaseResult, TimeoutCheck,
)
from order_service.state_machines import (
    TERMINAL_STATUSES, check_order_transition, check_payment_transition,
)
from order_service.wallet import WalletLedger

logger = logging.getLogger("order-service.escrow")
logger.setLevel(logging.INFO)

TIMEOUT_REFUND_REASON = "Restaurant failed to accept within 15 minutes"


def order_age_seconds(order: dict, now: datetime) -> float:
    return (now - order["created_at"]).total_seconds()


def is_awaiting_acceptance(order: dict) -> bool:
    return order["status"] == OrderStatus.PENDING.value and order["accepted_at"] is None


def evaluate_cancellation(order: dict, now: datetime, grace_seconds: int, timeout_seconds: int) -> CancellationCheck:
    """Decide whether an order may be cancelled at `now`, and why."""
    age = order_age_seconds(order, now)
    status = OrderStatus(order["status"])
    awaiting = is_awaiting_acceptance(order)

    def result(can_cancel, reason, message, remaining=None):
        return CancellationCheck(
            can_cancel=can_cancel, reason=reason, message=message,
            current_status=status, time_remaining_seconds=remaining,
        )

    if awaiting and age < grace_seconds:
        return result(True, "FREE_CANCELLATION_WINDOW",
                      "Order can be cancelled for free (within 1 minute)",
                      math.ceil(grace_seconds - age))

    if status in TERMINAL_STATUSES:
        return result(False, "ORDER_COMPLETED", f"Order has been {status.value.lower()}.")

    if not awaiting:
        return result(False, "RESTAURANT_ACCEPTED",
                      "Restaurant has accepted your order and is preparing it. Order cannot be cancelled.")

    if age > timeout_seconds:
        return result(True, "RESTAURANT_TIMEOUT",
                      "Restaurant took too long to accept. Order can be cancelled with full refund.")

    if order["payment_status"] == PaymentStatus.ESCROWED.value:
        return result(True, "BEFORE_RESTAURANT_ACCEPTANCE",
                      "Payment escrowed but restaurant hasn't accepted yet. Can cancel with refund.",
                      math.ceil(timeout_seconds - age))

    return result(True, "PENDING_ORDER", "Order is still pending. You can cancel with refund.")


class EscrowEngine:
    """Holds, releases and refunds order payments on top of the wallet ledger."""

    def __init__(self, database: Database, ledger: WalletLedger, notifier, config, clock=utcnow):
        self.database = database
        self.ledger = ledger
        self.notifier = notifier
        self.clock = clock
        self.grace_seconds = config.GRACE_PERIOD_SECONDS
        self.timeout_seconds = config.RESTAURANT_TIMEOUT_SECONDS
        self.platform_account_id = config.PLATFORM_ACCOUNT_ID

    async def _emit(self, event_type: str, data: dict, trace_id: str = None):
        if self.notifier is not None:
            await self.notifier.emit(event_type, data, trace_id)

    # ------------------------- cancellation -------------------------
    async def can_cancel(self, order_id: str) -> CancellationCheck:
        order = await load_order(self.database, order_id)
        return evaluate_cancellation(order, self.clock(), self.grace_seconds, self.timeout_seconds)

    async def cancel_order_with_refund(self, order_id: str, reason: str, trace_id: str = None) -> RefundResult:
        order = await load_order(self.database, order_id)
        check = evaluate_cancellation(order, self.clock(), self.grace_seconds, self.timeout_seconds)
        if not check.can_cancel:
            raise CancellationNotAllowed(check.reason, check.message)

        check_order_transition(order["status"], OrderStatus.CANCELLED)
        payment = PaymentStatus(order["payment_status"])
        check_payment_transition(payment, PaymentStatus.REFUNDED)

        method = PaymentMethod(order["payment_method"])
        total = to_money(order["total_price"])
        refund_amount = total if payment == PaymentStatus.ESCROWED and method == PaymentMethod.WALLET else ZERO
        manual = method != PaymentMethod.WALLET
        now = self.clock()

        async with self.database.transaction():
            rows = await self.database.fetch_all(
                update(orders)
                .where(
                    orders.c.id == order_id,
                    orders.c.status == OrderStatus.PENDING.value,
                    orders.c.accepted_at.is_(None),
                    orders.c.payment_status == payment.value,
                )
                .values(
                    status=OrderStatus.CANCELLED.value,
                    payment_status=PaymentStatus.REFUNDED.value,
                    restaurant_commission=ZERO,
                    delivery_commission=ZERO,
                    platform_earnings=ZERO,
                    driver_earning=ZERO,
                    cancelled_at=now,
                    cancellation_reason=reason,
                    refund_requires_manual_processing=manual,
                    updated_at=now,
                )
                .returning(orders.c.id)
            )
            if not rows:
                raise Conflict("Order changed while cancelling; retry")

            if refund_amount > 0:
                await self.ledger.refund_to_customer(order["customer_id"], refund_amount, order_id, reason)

        ESCROW_OPERATIONS.labels(operation="refund", outcome="success").inc()
        logger.info(
            f"[TRACE {trace_id}] ❌ Order {order_id} cancelled ({check.reason}); "
            f"refund={refund_amount} manual={manual}"
        )
        await self._emit("order.cancelled", {
            "order_id": order_id,
            "customer_id": order["customer_id"],
            "restaurant_id": order["restaurant_id"],
            "reason": reason,
            "cancellation_rule": check.reason,
            "refund_amount": refund_amount,
            "requires_manual_processing": manual,
        }, trace_id)

        return RefundResult(
            order_id=order_id,
            refund_amount=refund_amount,
            reason=reason,
            refund_processed=not manual,
            requires_manual_processing=manual,
        )

    # ------------------------- hold -------------------------
    async def process_escrow_payment(self, order_id: str, trace_id: str = None) -> EscrowResult:
        order = await load_order(self.database, order_id)
        payment = PaymentStatus(order["payment_status"])
        if payment != PaymentStatus.PENDING:
            raise InvalidPaymentState(payment.value, PaymentStatus.PENDING.value)

        method = PaymentMethod(order["payment_method"])
        total = to_money(order["total_price"])

        try:
            async with self.database.transaction():
                rows = await self.database.fetch_all(
                    update(orders)
                    .where(
                        orders.c.id == order_id,
                        orders.c.payment_status == PaymentStatus.PENDING.value,
                        orders.c.status != OrderStatus.CANCELLED.value,
                    )
                    .values(payment_status=PaymentStatus.ESCROWED.value, updated_at=self.clock())
                    .returning(orders.c.id)
                )
                if not rows:
                    raise Conflict("Payment already processed")

                # Card/UPI/cash capture is authorized outside this service
                if method == PaymentMethod.WALLET:
                    await self.ledger.debit_for_order(order["customer_id"], total, order_id)
        except ServiceError:
            ESCROW_OPERATIONS.labels(operation="hold", outcome="rejected").inc()
            raise

        ESCROW_OPERATIONS.labels(operation="hold", outcome="success").inc()
        logger.info(f"[TRACE {trace_id}] 🔒 Escrowed {total} for order {order_id} via {method.value}")
        await self._emit("payment.escrowed", {
            "order_id": order_id,
            "customer_id": order["customer_id"],
            "amount": total,
            "payment_method": method.value,
        }, trace_id)

        return EscrowResult(
            order_id=order_id,
            amount=total,
            payment_method=method,
            payment_status=PaymentStatus.ESCROWED,
        )

    # ------------------------- release -------------------------
    async def release_escrow_on_delivery(self, order_id: str, driver_id: str, trace_id: str = None) -> ReleaseResult:
        """
        Settle a delivered order in one transaction: the order becomes
        DELIVERED/PAID and the restaurant, driver and platform wallets are
        credited. Any failure leaves the order ESCROWED for a retry.
        """
        order = await load_order(self.database, order_id)
        payment = PaymentStatus(order["payment_status"])
        if payment != PaymentStatus.ESCROWED:
            raise InvalidPaymentState(payment.value, PaymentStatus.ESCROWED.value)
        check_order_transition(order["status"], OrderStatus.DELIVERED)
        if order["driver_id"] != driver_id:
            raise Forbidden("Order not assigned to this driver")

        subtotal = to_money(order["items_subtotal"])
        restaurant_commission = to_money(order["restaurant_commission"])
        restaurant_earning = subtotal - restaurant_commission
        driver_earning = to_money(order["driver_earning"])
        platform_earnings = to_money(order["platform_earnings"])
        now = self.clock()

        try:
            async with self.database.transaction():
                rows = await self.database.fetch_all(
                    update(orders)
                    .where(
                        orders.c.id == order_id,
                        orders.c.status == OrderStatus.DELIVERING.value,
                        orders.c.payment_status == PaymentStatus.ESCROWED.value,
                        orders.c.driver_id == driver_id,
                    )
                    .values(
                        status=OrderStatus.DELIVERED.value,
                        payment_status=PaymentStatus.PAID.value,
                        delivered_at=now,
                        updated_at=now,
                    )
                    .returning(orders.c.id)
                )
                if not rows:
                    raise Conflict("Order changed while releasing escrow; retry")

                if restaurant_earning > 0:
                    await self.ledger.apply_restaurant_earning(
                        order["restaurant_id"], subtotal, restaurant_commission, order_id
                    )
                if driver_earning > 0:
                    await self.ledger.apply_earning(
                        driver_id, OwnerKind.DRIVER, driver_earning, order_id,
                        description=f"Delivery earning for order {order_id}",
                    )
                if platform_earnings > 0:
                    await self.ledger.apply_earning(
                        self.platform_account_id, OwnerKind.PLATFORM, platform_earnings, order_id,
                        tx_type=TransactionType.PLATFORM_COMMISSION,
                        description=f"Platform commission for order {order_id}",
                    )
        except Exception:
            ESCROW_OPERATIONS.labels(operation="release", outcome="failed").inc()
            logger.exception(f"[TRACE {trace_id}] Escrow release failed for order {order_id}; still ESCROWED")
            raise

        total_released = restaurant_earning + driver_earning + platform_earnings
        ESCROW_OPERATIONS.labels(operation="release", outcome="success").inc()
        logger.info(
            f"[TRACE {trace_id}] 🔓 Released {total_released} for order {order_id}: "
            f"restaurant={restaurant_earning} driver={driver_earning} platform={platform_earnings}"
        )
        await self._emit("escrow.released", {
            "order_id": order_id,
            "restaurant_id": order["restaurant_id"],
            "driver_id": driver_id,
            "restaurant_credited": restaurant_earning,
            "driver_credited": driver_earning,
            "platform_earnings": platform_earnings,
        }, trace_id)

        return ReleaseResult(
            order_id=order_id,
            restaurant_credited=restaurant_earning,
            driver_credited=driver_earning,
            platform_earnings=platform_earnings,
            total_released=total_released,
        )

    # ------------------------- restaurant timeout -------------------------
    async def check_restaurant_timeout(self, order_id: str) -> TimeoutCheck:
        order = await load_order(self.database, order_id)
        age = order_age_seconds(order, self.clock())
        timed_out = age > self.timeout_seconds and is_awaiting_acceptance(order)
        return TimeoutCheck(
            has_timed_out=timed_out,
            order_age_seconds=int(age),
            timeout_threshold_seconds=self.timeout_seconds,
            can_refund=timed_out,
        )

    async def process_timeout_refund(self, order_id: str, trace_id: str = None) -> RefundResult:
        check = await self.check_restaurant_timeout(order_id)
        if not check.has_timed_out:
            raise CancellationNotAllowed(
                "NOT_TIMED_OUT",
                "Restaurant has not timed out or order is not eligible for timeout refund",
            )
        return await self.cancel_order_with_refund(order_id, TIMEOUT_REFUND_REASON, trace_id)
