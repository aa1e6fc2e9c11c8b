"""Tests for EscrowEngine: cancellation rules, hold, release and timeout refunds."""

from decimal import Decimal

import pytest

from order_service.errors import (
    CancellationNotAllowed, Forbidden, InsufficientFunds, InvalidPaymentState,
)
from order_service.escrow import TIMEOUT_REFUND_REASON
from order_service.models import OrderStatus, OwnerKind, PaymentMethod, PaymentStatus


async def deliverable(svc, driver_id="drv-1"):
    """A funded wallet order that is out for delivery with `driver_id`."""
    await svc.fund("cust-1", "300.00")
    order = await svc.place()
    await svc.to_ready(order.id)
    await svc.assign(order.id, driver_id)
    await svc.lifecycle.pick_up(order.id, driver_id)
    await svc.lifecycle.start_delivery(order.id, driver_id)
    return order


class TestCanCancel:
    def test_free_window(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(30)
            return await svc.escrow.can_cancel(order.id)

        check = run(scenario)
        assert check.can_cancel is True
        assert check.reason == "FREE_CANCELLATION_WINDOW"
        assert check.time_remaining_seconds == 30

    def test_pending_after_grace(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(120)
            return await svc.escrow.can_cancel(order.id)

        check = run(scenario)
        assert check.can_cancel is True
        assert check.reason == "PENDING_ORDER"

    def test_escrowed_before_acceptance(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(120)
            await svc.escrow.process_escrow_payment(order.id)
            return await svc.escrow.can_cancel(order.id)

        check = run(scenario)
        assert check.can_cancel is True
        assert check.reason == "BEFORE_RESTAURANT_ACCEPTANCE"
        assert check.time_remaining_seconds == 780

    def test_restaurant_timeout(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(900)
            at_limit = await svc.escrow.can_cancel(order.id)
            clock.advance(1)
            return at_limit, await svc.escrow.can_cancel(order.id)

        at_limit, past_limit = run(scenario)
        assert at_limit.reason == "PENDING_ORDER"
        assert past_limit.reason == "RESTAURANT_TIMEOUT"
        assert past_limit.can_cancel is True

    def test_accepted_order(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(61)
            await svc.lifecycle.accept_order(order.id, "rest-1")
            return await svc.escrow.can_cancel(order.id)

        check = run(scenario)
        assert check.can_cancel is False
        assert check.reason == "RESTAURANT_ACCEPTED"
        assert check.current_status == OrderStatus.ACCEPTED

    def test_completed_order(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            await svc.lifecycle.cancel(order.id, "oops")
            return await svc.escrow.can_cancel(order.id)

        check = run(scenario)
        assert check.can_cancel is False
        assert check.reason == "ORDER_COMPLETED"

    def test_cancelled_order_stays_completed_inside_free_window(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            await svc.escrow.process_escrow_payment(order.id)
            clock.advance(10)
            refund = await svc.escrow.cancel_order_with_refund(order.id, "changed mind")
            clock.advance(10)
            check = await svc.escrow.can_cancel(order.id)
            with pytest.raises(CancellationNotAllowed) as exc:
                await svc.escrow.cancel_order_with_refund(order.id, "again")
            return refund, check, exc.value, await svc.balance("cust-1")

        refund, check, error, balance = run(scenario)
        assert refund.refund_amount == Decimal("250.00")
        assert check.can_cancel is False
        assert check.reason == "ORDER_COMPLETED"
        assert error.reason == "ORDER_COMPLETED"
        assert balance == Decimal("300.00")


class TestHold:
    def test_hold_debits_wallet_once(self, run):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            result = await svc.escrow.process_escrow_payment(order.id)
            with pytest.raises(InvalidPaymentState):
                await svc.escrow.process_escrow_payment(order.id)
            return result, await svc.balance("cust-1")

        result, balance = run(scenario)
        assert result.payment_status == PaymentStatus.ESCROWED
        assert result.amount == Decimal("250.00")
        assert balance == Decimal("50.00")

    def test_failed_hold_changes_nothing(self, run):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            first = await svc.place()
            second = await svc.place()
            await svc.escrow.process_escrow_payment(first.id)
            with pytest.raises(InsufficientFunds):
                await svc.escrow.process_escrow_payment(second.id)
            return await svc.lifecycle.get_order(second.id), await svc.balance("cust-1")

        second, balance = run(scenario)
        assert second.payment_status == PaymentStatus.PENDING
        assert balance == Decimal("50.00")

    def test_card_hold_skips_wallet(self, run):
        async def scenario(svc):
            order = await svc.place(method=PaymentMethod.CARD)
            result = await svc.escrow.process_escrow_payment(order.id)
            return result, await svc.balance("cust-1")

        result, balance = run(scenario)
        assert result.payment_method == PaymentMethod.CARD
        assert balance == Decimal("0")


class TestCancelWithRefund:
    def test_escrowed_wallet_order_is_refunded(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(120)
            await svc.escrow.process_escrow_payment(order.id)
            result = await svc.escrow.cancel_order_with_refund(order.id, "changed mind")
            return result, await svc.lifecycle.get_order(order.id), await svc.balance("cust-1")

        result, order, balance = run(scenario)
        assert result.refund_amount == Decimal("250.00")
        assert result.refund_processed is True
        assert balance == Decimal("300.00")
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_status == PaymentStatus.REFUNDED
        assert order.platform_earnings == Decimal("0")
        assert order.driver_earning == Decimal("0")

    def test_unheld_order_refunds_nothing(self, run, notifier):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            return await svc.escrow.cancel_order_with_refund(order.id, "oops"), await svc.balance("cust-1")

        result, balance = run(scenario)
        assert result.refund_amount == Decimal("0")
        assert result.requires_manual_processing is False
        assert balance == Decimal("300.00")
        assert "order.cancelled" in notifier.types()

    def test_card_order_needs_manual_refund(self, run, clock):
        async def scenario(svc):
            order = await svc.place(method=PaymentMethod.CARD)
            clock.advance(120)
            await svc.escrow.process_escrow_payment(order.id)
            result = await svc.escrow.cancel_order_with_refund(order.id, "changed mind")
            return result, await svc.lifecycle.get_order(order.id)

        result, order = run(scenario)
        assert result.requires_manual_processing is True
        assert result.refund_processed is False
        assert result.refund_amount == Decimal("0")
        assert order.refund_requires_manual_processing is True

    def test_accepted_order_cannot_be_cancelled(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(61)
            await svc.lifecycle.accept_order(order.id, "rest-1")
            with pytest.raises(CancellationNotAllowed) as exc:
                await svc.escrow.cancel_order_with_refund(order.id, "too late")
            return exc.value, await svc.balance("cust-1")

        error, balance = run(scenario)
        assert error.reason == "RESTAURANT_ACCEPTED"
        assert balance == Decimal("50.00")

    def test_failed_refund_keeps_order(self, run, clock, monkeypatch):
        async def broken_refund(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(120)
            await svc.escrow.process_escrow_payment(order.id)
            monkeypatch.setattr(svc.ledger, "refund_to_customer", broken_refund)
            with pytest.raises(RuntimeError):
                await svc.escrow.cancel_order_with_refund(order.id, "changed mind")
            return await svc.lifecycle.get_order(order.id), await svc.balance("cust-1")

        order, balance = run(scenario)
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.ESCROWED
        assert order.cancelled_at is None
        assert balance == Decimal("50.00")


class TestRelease:
    def test_reference_split(self, run, notifier):
        async def scenario(svc):
            order = await deliverable(svc)
            result = await svc.escrow.release_escrow_on_delivery(order.id, "drv-1")
            balances = (
                await svc.balance("rest-1", OwnerKind.RESTAURANT),
                await svc.balance("drv-1", OwnerKind.DRIVER),
                await svc.balance(svc.config.PLATFORM_ACCOUNT_ID, OwnerKind.PLATFORM),
            )
            return result, balances, await svc.lifecycle.get_order(order.id), await svc.ledger.reconcile()

        result, balances, order, drift = run(scenario)
        assert balances == (Decimal("178.50"), Decimal("32.00"), Decimal("39.50"))
        assert result.total_released == Decimal("250.00")
        assert order.status == OrderStatus.DELIVERED
        assert order.payment_status == PaymentStatus.PAID
        assert drift == []
        assert "escrow.released" in notifier.types()

    def test_wrong_driver(self, run):
        async def scenario(svc):
            order = await deliverable(svc)
            with pytest.raises(Forbidden):
                await svc.escrow.release_escrow_on_delivery(order.id, "drv-2")
            return await svc.lifecycle.get_order(order.id)

        order = run(scenario)
        assert order.payment_status == PaymentStatus.ESCROWED

    def test_release_happens_once(self, run):
        async def scenario(svc):
            order = await deliverable(svc)
            await svc.escrow.release_escrow_on_delivery(order.id, "drv-1")
            with pytest.raises(InvalidPaymentState):
                await svc.escrow.release_escrow_on_delivery(order.id, "drv-1")
            return await svc.balance("drv-1", OwnerKind.DRIVER)

        assert run(scenario) == Decimal("32.00")

    def test_failed_credit_rolls_back(self, run, monkeypatch):
        async def scenario(svc):
            order = await deliverable(svc)
            apply_earning = svc.ledger.apply_earning

            async def driver_credit_fails(owner_id, kind, *args, **kwargs):
                if OwnerKind(kind) == OwnerKind.DRIVER:
                    raise RuntimeError("ledger unavailable")
                return await apply_earning(owner_id, kind, *args, **kwargs)

            monkeypatch.setattr(svc.ledger, "apply_earning", driver_credit_fails)
            with pytest.raises(RuntimeError):
                await svc.escrow.release_escrow_on_delivery(order.id, "drv-1")
            restaurant_lines = await svc.ledger.list_transactions("rest-1", OwnerKind.RESTAURANT)
            return (
                await svc.lifecycle.get_order(order.id),
                await svc.balance("rest-1", OwnerKind.RESTAURANT),
                restaurant_lines.total,
            )

        order, restaurant_balance, restaurant_lines = run(scenario)
        assert order.status == OrderStatus.DELIVERING
        assert order.payment_status == PaymentStatus.ESCROWED
        assert restaurant_balance == Decimal("0")
        assert restaurant_lines == 0


class TestTimeoutRefund:
    def test_refund_after_timeout(self, run, clock):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            clock.advance(120)
            await svc.escrow.process_escrow_payment(order.id)
            early = await svc.escrow.check_restaurant_timeout(order.id)
            with pytest.raises(CancellationNotAllowed):
                await svc.escrow.process_timeout_refund(order.id)
            clock.advance(781)
            late = await svc.escrow.check_restaurant_timeout(order.id)
            result = await svc.escrow.process_timeout_refund(order.id)
            return early, late, result, await svc.balance("cust-1")

        early, late, result, balance = run(scenario)
        assert early.has_timed_out is False
        assert late.has_timed_out is True and late.order_age_seconds == 901
        assert result.reason == TIMEOUT_REFUND_REASON
        assert balance == Decimal("300.00")
