# order_service/wallet.py
import math
import uuid
import logging
from decimal import Decimal
from typing import List, Optional

from databases import Database
from sqlalchemy import and_, func, select, update

from order_service.database import insert_ignore, row_to_dict, utcnow
from order_service.errors import (
    Conflict, Forbidden, InsufficientFunds, InvalidAmount, NotFound, ValidationError,
)
from order_service.metrics import WALLET_DRIFT_ACCOUNTS, WALLET_TRANSACTIONS
from order_service.models import (
    OwnerKind, TransactionStatus, TransactionType, wallet_accounts, wallet_transactions,
)
from order_service.pricing import ZERO, to_money
from order_service.schemas import (
    BalanceCheck, TransactionPage, TransactionView, WalletDrift, WalletView,
)

logger = logging.getLogger("order-service.wallet")
logger.setLevel(logging.INFO)

TOTAL_COLUMNS = (
    "total_earnings", "total_top_ups", "total_spent", "total_refunds",
    "total_withdrawn", "total_commission_paid",
)


def _positive(amount) -> Decimal:
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidAmount(amount)
    return amount


class WalletLedger:
    """
    Per-party balances plus an append-only transaction log.

    A wallet row only changes in the same transaction as the ledger line
    that justifies it, so the sum of APPROVED lines equals the balance.
    Calls made inside a caller's transaction become savepoints of it.
    """

    def __init__(self, database: Database, clock=utcnow, platform_account_id: str = "platform"):
        self.database = database
        self.clock = clock
        self.platform_account_id = platform_account_id

    # ------------------------- wallet rows -------------------------
    def _owner(self, owner_id: str, kind: OwnerKind):
        return and_(
            wallet_accounts.c.owner_id == owner_id,
            wallet_accounts.c.owner_kind == kind.value,
        )

    async def _ensure_wallet(self, owner_id: str, kind: OwnerKind):
        now = self.clock()
        values = {column: ZERO for column in TOTAL_COLUMNS}
        await self.database.execute(
            insert_ignore(self.database, wallet_accounts).values(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                owner_kind=kind.value,
                balance=ZERO,
                can_withdraw=kind in (OwnerKind.DRIVER, OwnerKind.RESTAURANT),
                is_active=True,
                last_activity_at=None,
                created_at=now,
                updated_at=now,
                **values,
            )
        )

    async def _fetch_wallet(self, owner_id: str, kind: OwnerKind):
        return await self.database.fetch_one(
            wallet_accounts.select().where(self._owner(owner_id, kind))
        )

    async def get_or_create_wallet(self, owner_id: str, kind) -> WalletView:
        kind = OwnerKind(kind)
        row = await self._fetch_wallet(owner_id, kind)
        if row is None:
            await self._ensure_wallet(owner_id, kind)
            row = await self._fetch_wallet(owner_id, kind)
            logger.info(f"💼 Wallet created for {kind.value} {owner_id}")
        return WalletView(**row_to_dict(row, wallet_accounts))

    async def _adjust(self, owner_id: str, kind: OwnerKind, delta: Decimal,
                      totals: dict, require_funds: Optional[Decimal] = None) -> bool:
        """Move the balance by `delta` and bump lifetime totals; False if the guard failed."""
        now = self.clock()
        values = {
            "balance": wallet_accounts.c.balance + delta,
            "last_activity_at": now,
            "updated_at": now,
        }
        for column, amount in totals.items():
            values[column] = wallet_accounts.c[column] + amount

        query = update(wallet_accounts).where(self._owner(owner_id, kind))
        if require_funds is not None:
            query = query.where(
                wallet_accounts.c.balance >= require_funds,
                wallet_accounts.c.is_active == True,  # noqa: E712
            )
        rows = await self.database.fetch_all(query.values(**values).returning(wallet_accounts.c.id))
        return len(rows) == 1

    async def _record(self, owner_id: str, kind: OwnerKind, amount: Decimal, tx_type: TransactionType,
                      status: TransactionStatus = TransactionStatus.APPROVED, description: str = None,
                      related_order_id: str = None, linked_transaction_id: str = None,
                      reference: str = None) -> str:
        now = self.clock()
        tx_id = str(uuid.uuid4())
        await self.database.execute(
            wallet_transactions.insert().values(
                id=tx_id,
                owner_id=owner_id,
                owner_kind=kind.value,
                amount=amount,
                type=tx_type.value,
                status=status.value,
                description=description,
                related_order_id=related_order_id,
                linked_transaction_id=linked_transaction_id,
                reference=reference,
                created_at=now,
                processed_at=now if status == TransactionStatus.APPROVED else None,
            )
        )
        WALLET_TRANSACTIONS.labels(type=tx_type.value, status=status.value).inc()
        return tx_id

    async def _balance(self, owner_id: str, kind: OwnerKind) -> Decimal:
        row = await self._fetch_wallet(owner_id, kind)
        return to_money(row["balance"]) if row else ZERO

    # ------------------------- credits / debits -------------------------
    async def apply_earning(self, owner_id: str, kind, amount, related_order_id: str = None,
                            tx_type: TransactionType = TransactionType.EARNING,
                            description: str = None) -> str:
        kind = OwnerKind(kind)
        amount = _positive(amount)

        async with self.database.transaction():
            await self._ensure_wallet(owner_id, kind)
            await self._adjust(owner_id, kind, amount, {"total_earnings": amount})
            tx_id = await self._record(
                owner_id, kind, amount, tx_type,
                description=description or f"Earning for order {related_order_id}",
                related_order_id=related_order_id,
            )

        logger.info(f"💰 {kind.value} {owner_id} credited {amount} ({tx_type.value}, order={related_order_id})")
        return tx_id

    async def apply_restaurant_earning(self, restaurant_id: str, gross, commission, order_id: str) -> str:
        """Credit the net amount as a gross EARNING line plus a linked COMMISSION_DEDUCTION line."""
        gross = Decimal(gross)
        commission = Decimal(commission)
        net = gross - commission
        if net <= 0 or commission < 0:
            raise InvalidAmount(net)

        kind = OwnerKind.RESTAURANT
        async with self.database.transaction():
            await self._ensure_wallet(restaurant_id, kind)
            await self._adjust(restaurant_id, kind, net, {
                "total_earnings": gross,
                "total_commission_paid": commission,
            })
            earning_id = await self._record(
                restaurant_id, kind, gross, TransactionType.EARNING,
                description=f"Order {order_id} subtotal",
                related_order_id=order_id,
            )
            if commission > 0:
                await self._record(
                    restaurant_id, kind, -commission, TransactionType.COMMISSION_DEDUCTION,
                    description=f"Platform commission on order {order_id}",
                    related_order_id=order_id,
                    linked_transaction_id=earning_id,
                )

        logger.info(f"🍽️ Restaurant {restaurant_id} credited {net} (gross {gross}, commission {commission})")
        return earning_id

    async def debit_for_order(self, customer_id: str, amount, order_id: str) -> str:
        kind = OwnerKind.CUSTOMER
        amount = _positive(amount)

        async with self.database.transaction():
            await self._ensure_wallet(customer_id, kind)
            debited = await self._adjust(
                customer_id, kind, -amount, {"total_spent": amount}, require_funds=amount
            )
            if not debited:
                raise InsufficientFunds(await self._balance(customer_id, kind), amount)
            tx_id = await self._record(
                customer_id, kind, -amount, TransactionType.ORDER_PAYMENT,
                description=f"Payment for order {order_id}",
                related_order_id=order_id,
            )

        logger.info(f"💳 Customer {customer_id} debited {amount} for order {order_id}")
        return tx_id

    async def refund_to_customer(self, customer_id: str, amount, order_id: str, reason: str = None) -> str:
        kind = OwnerKind.CUSTOMER
        amount = _positive(amount)

        async with self.database.transaction():
            await self._ensure_wallet(customer_id, kind)
            await self._adjust(customer_id, kind, amount, {"total_refunds": amount})
            tx_id = await self._record(
                customer_id, kind, amount, TransactionType.REFUND,
                description=f"Refund for order {order_id}" + (f": {reason}" if reason else ""),
                related_order_id=order_id,
            )

        logger.info(f"↩️ Customer {customer_id} refunded {amount} for order {order_id}")
        return tx_id

    # ------------------------- admin-gated flows -------------------------
    async def request_top_up(self, owner_id: str, amount, reference: str = None,
                             kind=OwnerKind.CUSTOMER) -> TransactionView:
        kind = OwnerKind(kind)
        amount = _positive(amount)

        await self._ensure_wallet(owner_id, kind)
        tx_id = await self._record(
            owner_id, kind, amount, TransactionType.TOPUP,
            status=TransactionStatus.PENDING,
            description=f"Top-up request of {amount}",
            reference=reference,
        )
        logger.info(f"📝 Top-up {tx_id} of {amount} requested by {owner_id}")
        return await self.get_transaction(tx_id)

    async def request_withdrawal(self, owner_id: str, kind, amount) -> TransactionView:
        kind = OwnerKind(kind)
        amount = _positive(amount)

        wallet = await self.get_or_create_wallet(owner_id, kind)
        if not wallet.can_withdraw:
            raise Forbidden("Withdrawal not allowed. Contact admin.")
        if wallet.balance < amount:
            raise InsufficientFunds(wallet.balance, amount)

        tx_id = await self._record(
            owner_id, kind, -amount, TransactionType.WITHDRAWAL,
            status=TransactionStatus.PENDING,
            description=f"Withdrawal request of {amount}",
        )
        logger.info(f"📝 Withdrawal {tx_id} of {amount} requested by {kind.value} {owner_id}")
        return await self.get_transaction(tx_id)

    async def _settle(self, tx_id: str, status: TransactionStatus, admin_id: str, notes: str = None):
        rows = await self.database.fetch_all(
            update(wallet_transactions)
            .where(
                wallet_transactions.c.id == tx_id,
                wallet_transactions.c.status == TransactionStatus.PENDING.value,
            )
            .values(status=status.value, admin_id=admin_id, admin_notes=notes, processed_at=self.clock())
            .returning(wallet_transactions.c.id)
        )
        if not rows:
            existing = await self.database.fetch_one(
                wallet_transactions.select().where(wallet_transactions.c.id == tx_id)
            )
            if existing is None:
                raise NotFound("Transaction", tx_id)
            raise Conflict("Transaction already processed")

    async def approve_transaction(self, tx_id: str, admin_id: str, notes: str = None) -> TransactionView:
        async with self.database.transaction():
            await self._settle(tx_id, TransactionStatus.APPROVED, admin_id, notes)
            tx = await self.get_transaction(tx_id)
            amount = to_money(tx.amount)
            kind = tx.owner_kind

            if tx.type == TransactionType.TOPUP:
                await self._ensure_wallet(tx.owner_id, kind)
                await self._adjust(tx.owner_id, kind, amount, {"total_top_ups": amount})
            elif tx.type == TransactionType.WITHDRAWAL:
                withdrawn = -amount
                debited = await self._adjust(
                    tx.owner_id, kind, amount, {"total_withdrawn": withdrawn}, require_funds=withdrawn
                )
                if not debited:
                    raise InsufficientFunds(await self._balance(tx.owner_id, kind), withdrawn)
            else:
                raise ValidationError(f"{tx.type.value} transactions are not admin-approved")

        WALLET_TRANSACTIONS.labels(type=tx.type.value, status=TransactionStatus.APPROVED.value).inc()
        logger.info(f"✅ Transaction {tx_id} ({tx.type.value} {amount}) approved by admin {admin_id}")
        return await self.get_transaction(tx_id)

    async def reject_transaction(self, tx_id: str, admin_id: str, notes: str = None) -> TransactionView:
        await self._settle(tx_id, TransactionStatus.REJECTED, admin_id, notes)
        tx = await self.get_transaction(tx_id)
        WALLET_TRANSACTIONS.labels(type=tx.type.value, status=TransactionStatus.REJECTED.value).inc()
        logger.info(f"🚫 Transaction {tx_id} rejected by admin {admin_id}")
        return tx

    # ------------------------- reads -------------------------
    async def get_transaction(self, tx_id: str) -> TransactionView:
        row = await self.database.fetch_one(
            wallet_transactions.select().where(wallet_transactions.c.id == tx_id)
        )
        if row is None:
            raise NotFound("Transaction", tx_id)
        return TransactionView(**row_to_dict(row, wallet_transactions))

    async def check_sufficient_balance(self, owner_id: str, amount, kind=OwnerKind.CUSTOMER) -> BalanceCheck:
        kind = OwnerKind(kind)
        required = Decimal(amount)
        row = await self._fetch_wallet(owner_id, kind)
        balance = to_money(row["balance"]) if row else ZERO
        return BalanceCheck(
            current_balance=balance,
            required_amount=required,
            has_sufficient_balance=bool(row) and bool(row["is_active"]) and balance >= required,
        )

    async def _page(self, condition, page: int, limit: int) -> TransactionPage:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        rows = await self.database.fetch_all(
            wallet_transactions.select()
            .where(condition)
            .order_by(wallet_transactions.c.created_at.desc(), wallet_transactions.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        total = await self.database.fetch_val(
            select(func.count()).select_from(wallet_transactions).where(condition)
        )
        return TransactionPage(
            transactions=[TransactionView(**row_to_dict(r, wallet_transactions)) for r in rows],
            page=page,
            limit=limit,
            total=total,
            pages=math.ceil(total / limit),
        )

    async def list_transactions(self, owner_id: str, kind, page: int = 1, limit: int = 20) -> TransactionPage:
        kind = OwnerKind(kind)
        return await self._page(
            and_(
                wallet_transactions.c.owner_id == owner_id,
                wallet_transactions.c.owner_kind == kind.value,
            ),
            page, limit,
        )

    async def list_pending_transactions(self, page: int = 1, limit: int = 20) -> TransactionPage:
        return await self._page(
            wallet_transactions.c.status == TransactionStatus.PENDING.value, page, limit
        )

    # ------------------------- reconciliation -------------------------
    async def reconcile(self, owner_id: str = None) -> List[WalletDrift]:
        """Compare every balance with the sum of its APPROVED lines; report, never correct."""
        ledger = (
            select(
                wallet_transactions.c.owner_id,
                wallet_transactions.c.owner_kind,
                func.sum(wallet_transactions.c.amount).label("ledger_sum"),
            )
            .where(wallet_transactions.c.status == TransactionStatus.APPROVED.value)
            .group_by(wallet_transactions.c.owner_id, wallet_transactions.c.owner_kind)
            .subquery()
        )
        query = select(
            wallet_accounts.c.owner_id,
            wallet_accounts.c.owner_kind,
            wallet_accounts.c.balance,
            ledger.c.ledger_sum,
        ).select_from(
            wallet_accounts.outerjoin(
                ledger,
                and_(
                    ledger.c.owner_id == wallet_accounts.c.owner_id,
                    ledger.c.owner_kind == wallet_accounts.c.owner_kind,
                ),
            )
        )
        if owner_id is not None:
            query = query.where(wallet_accounts.c.owner_id == owner_id)

        drifted = []
        for row in await self.database.fetch_all(query):
            balance = to_money(row["balance"])
            ledger_sum = to_money(row["ledger_sum"])
            if balance != ledger_sum:
                drifted.append(WalletDrift(
                    owner_id=row["owner_id"],
                    owner_kind=row["owner_kind"],
                    balance=balance,
                    ledger_sum=ledger_sum,
                    drift=balance - ledger_sum,
                ))

        if owner_id is None:
            WALLET_DRIFT_ACCOUNTS.set(len(drifted))
        for d in drifted:
            logger.warning(
                f"⚠️ Wallet drift {d.owner_kind.value} {d.owner_id}: balance={d.balance} ledger={d.ledger_sum}"
            )
        return drifted
