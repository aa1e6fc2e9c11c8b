# order_service/routes.py
import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from order_service.errors import Forbidden
from order_service.lifecycle import driver_command, restaurant_command
from order_service.models import OrderStatus, OwnerKind
from order_service.schemas import (
    AdminDecision, AssignmentView, AvailabilityUpdate, BalanceCheck, CancelRequest,
    CancellationCheck, DriverStateView, EscrowResult, MaintenanceReport, OfferRequest,
    OrderCreate, OrderView, RefundResult, ReleaseResult, StatusUpdate, TimeoutCheck,
    TopUpRequest, TransactionPage, TransactionView, WalletDrift, WalletView, WithdrawalRequest,
)
from shared.auth import require_roles

logger = logging.getLogger("order-service.routes")

router = APIRouter()

ROLE_KINDS = {
    "customer": OwnerKind.CUSTOMER,
    "driver": OwnerKind.DRIVER,
    "restaurant": OwnerKind.RESTAURANT,
}

any_user = require_roles()
customer_only = require_roles("customer")
customer_or_admin = require_roles("customer", "admin")
restaurant_only = require_roles("restaurant")
driver_only = require_roles("driver")
admin_only = require_roles("admin")


def services(request: Request):
    return request.app.state


def wallet_owner(user, state):
    """Wallet a token acts on; admins act on the platform account."""
    if user["role"] == "admin":
        return state.config.PLATFORM_ACCOUNT_ID, OwnerKind.PLATFORM
    if user["role"] not in ROLE_KINDS:
        raise Forbidden(f"Role {user['role']} has no wallet")
    return user["id"], ROLE_KINDS[user["role"]]


async def ensure_party(state, order_id: str, user, *fields) -> OrderView:
    order = await state.lifecycle.get_order(order_id)
    if user["role"] == "admin":
        return order
    if any(getattr(order, field) == user["id"] for field in fields):
        return order
    raise Forbidden("Not a party to this order")


# ------------------------- ORDERS -------------------------
@router.post("/orders", response_model=OrderView)
async def create_order(body: OrderCreate, user=Depends(customer_only), state=Depends(services)):
    return await state.lifecycle.place_order(user["id"], body, user["trace_id"])


@router.get("/orders/{order_id}", response_model=OrderView)
async def get_order(order_id: str, user=Depends(any_user), state=Depends(services)):
    return await ensure_party(state, order_id, user, "customer_id", "restaurant_id", "driver_id")


@router.get("/orders/{order_id}/can-cancel", response_model=CancellationCheck)
async def can_cancel(order_id: str, user=Depends(customer_or_admin), state=Depends(services)):
    await ensure_party(state, order_id, user, "customer_id")
    return await state.escrow.can_cancel(order_id)


@router.get("/orders/{order_id}/cancellation-info")
async def cancellation_info(order_id: str, user=Depends(customer_or_admin), state=Depends(services)):
    await ensure_party(state, order_id, user, "customer_id")
    return {
        "cancellation": await state.escrow.can_cancel(order_id),
        "timeout": await state.escrow.check_restaurant_timeout(order_id),
    }


@router.post("/orders/{order_id}/cancel", response_model=RefundResult)
async def cancel_order(order_id: str, body: Optional[CancelRequest] = None,
                       user=Depends(customer_or_admin), state=Depends(services)):
    await ensure_party(state, order_id, user, "customer_id")
    body = body or CancelRequest()
    return await state.lifecycle.cancel(order_id, body.reason, user["trace_id"])


@router.post("/orders/{order_id}/process-escrow", response_model=EscrowResult)
async def process_escrow(order_id: str, user=Depends(customer_or_admin), state=Depends(services)):
    await ensure_party(state, order_id, user, "customer_id")
    return await state.escrow.process_escrow_payment(order_id, user["trace_id"])


@router.post("/orders/{order_id}/accept", response_model=OrderView)
async def accept_order(order_id: str, user=Depends(restaurant_only), state=Depends(services)):
    return await state.lifecycle.apply(
        order_id, restaurant_command(OrderStatus.ACCEPTED, user["id"]), user["trace_id"]
    )


@router.patch("/orders/{order_id}/status", response_model=OrderView)
async def update_order_status(order_id: str, body: StatusUpdate, user=Depends(restaurant_only),
                              state=Depends(services)):
    return await state.lifecycle.apply(order_id, restaurant_command(body.status, user["id"]), user["trace_id"])


@router.post("/orders/{order_id}/deliver", response_model=ReleaseResult)
async def deliver_order(order_id: str, user=Depends(driver_only), state=Depends(services)):
    return await state.lifecycle.deliver(order_id, user["id"], user["trace_id"])


@router.get("/orders/{order_id}/timeout-check", response_model=TimeoutCheck)
async def timeout_check(order_id: str, user=Depends(any_user), state=Depends(services)):
    return await state.escrow.check_restaurant_timeout(order_id)


@router.post("/orders/{order_id}/timeout-refund", response_model=RefundResult)
async def timeout_refund(order_id: str, user=Depends(customer_or_admin), state=Depends(services)):
    await ensure_party(state, order_id, user, "customer_id")
    return await state.escrow.process_timeout_refund(order_id, user["trace_id"])


@router.post("/orders/{order_id}/offers", response_model=List[AssignmentView])
async def offer_order(order_id: str, body: OfferRequest, user=Depends(admin_only), state=Depends(services)):
    return await state.assignments.offer_assignment(
        order_id, body.driver_ids, body.wave, body.ttl_seconds, user["trace_id"]
    )


@router.get("/orders/{order_id}/assignments", response_model=List[AssignmentView])
async def order_assignments(order_id: str, user=Depends(admin_only), state=Depends(services)):
    return await state.assignments.list_assignments(order_id)


# ------------------------- DRIVER -------------------------
@router.post("/driver/orders/{order_id}/accept", response_model=AssignmentView)
async def driver_accept(order_id: str, user=Depends(driver_only), state=Depends(services)):
    return await state.assignments.accept_assignment(order_id, user["id"], user["trace_id"])


@router.post("/driver/assignments/{assignment_id}/decline", response_model=AssignmentView)
async def driver_decline(assignment_id: str, user=Depends(driver_only), state=Depends(services)):
    return await state.assignments.decline_assignment(assignment_id, user["id"], user["trace_id"])


@router.patch("/driver/orders/{order_id}/status", response_model=OrderView)
async def driver_update_status(order_id: str, body: StatusUpdate, user=Depends(driver_only),
                               state=Depends(services)):
    return await state.lifecycle.apply(order_id, driver_command(body.status, user["id"]), user["trace_id"])


@router.post("/driver/availability", response_model=DriverStateView)
async def driver_availability(body: AvailabilityUpdate, user=Depends(driver_only), state=Depends(services)):
    return await state.drivers.set_online(user["id"], body.is_online)


@router.post("/driver/heartbeat", response_model=DriverStateView)
async def driver_heartbeat(user=Depends(driver_only), state=Depends(services)):
    return await state.drivers.heartbeat(user["id"])


# ------------------------- WALLET -------------------------
@router.get("/wallet", response_model=WalletView)
async def get_wallet(user=Depends(any_user), state=Depends(services)):
    owner_id, kind = wallet_owner(user, state)
    return await state.ledger.get_or_create_wallet(owner_id, kind)


@router.get("/wallet/transactions", response_model=TransactionPage)
async def wallet_transactions(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                              user=Depends(any_user), state=Depends(services)):
    owner_id, kind = wallet_owner(user, state)
    return await state.ledger.list_transactions(owner_id, kind, page, limit)


@router.get("/wallet/check-balance", response_model=BalanceCheck)
async def check_balance(amount: Decimal = Query(..., gt=0), user=Depends(customer_only),
                        state=Depends(services)):
    return await state.ledger.check_sufficient_balance(user["id"], amount)


@router.post("/wallet/topup", response_model=TransactionView)
async def request_top_up(body: TopUpRequest, user=Depends(customer_only), state=Depends(services)):
    tx = await state.ledger.request_top_up(user["id"], body.amount, body.reference)
    await state.notifier.emit("wallet.transaction_requested", tx.model_dump(mode="json"), user["trace_id"])
    return tx


@router.post("/wallet/withdraw", response_model=TransactionView)
async def request_withdrawal(body: WithdrawalRequest, user=Depends(require_roles("driver", "restaurant")),
                             state=Depends(services)):
    tx = await state.ledger.request_withdrawal(user["id"], ROLE_KINDS[user["role"]], body.amount)
    await state.notifier.emit("wallet.transaction_requested", tx.model_dump(mode="json"), user["trace_id"])
    return tx


@router.get("/wallet/admin/pending", response_model=TransactionPage)
async def pending_transactions(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                               user=Depends(admin_only), state=Depends(services)):
    return await state.ledger.list_pending_transactions(page, limit)


@router.put("/wallet/admin/approve/{tx_id}", response_model=TransactionView)
async def approve_transaction(tx_id: str, body: Optional[AdminDecision] = None,
                              user=Depends(admin_only), state=Depends(services)):
    tx = await state.ledger.approve_transaction(tx_id, user["id"], body.notes if body else None)
    await state.notifier.emit("wallet.transaction_processed", tx.model_dump(mode="json"), user["trace_id"])
    return tx


@router.put("/wallet/admin/reject/{tx_id}", response_model=TransactionView)
async def reject_transaction(tx_id: str, body: Optional[AdminDecision] = None,
                             user=Depends(admin_only), state=Depends(services)):
    tx = await state.ledger.reject_transaction(tx_id, user["id"], body.notes if body else None)
    await state.notifier.emit("wallet.transaction_processed", tx.model_dump(mode="json"), user["trace_id"])
    return tx


@router.get("/wallet/admin/reconcile", response_model=List[WalletDrift])
async def reconcile_wallets(owner_id: Optional[str] = None, user=Depends(admin_only), state=Depends(services)):
    return await state.ledger.reconcile(owner_id)


# ------------------------- ADMIN -------------------------
@router.post("/admin/maintenance/run", response_model=MaintenanceReport)
async def run_maintenance(user=Depends(admin_only), state=Depends(services)):
    logger.info(f"[TRACE {user['trace_id']}] Manual maintenance run by admin {user['id']}")
    return await state.reconciler.run_cycle()


@router.post("/admin/maintenance/emergency")
async def emergency_cleanup(user=Depends(admin_only), state=Depends(services)):
    logger.warning(f"[TRACE {user['trace_id']}] Emergency cleanup requested by admin {user['id']}")
    return await state.reconciler.emergency_cleanup()


@router.get("/admin/health")
async def system_health(user=Depends(admin_only), state=Depends(services)):
    return await state.reconciler.system_health()
