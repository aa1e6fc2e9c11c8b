# order_service/maintenance.py
import asyncio
import logging
from datetime import timedelta

from databases import Database
from sqlalchemy import delete, exists, func, select, update

from order_service.database import utcnow
from order_service.driver_state import DriverStateRegistry
from order_service.errors import ServiceError
from order_service.escrow import EscrowEngine
from order_service.metrics import MAINTENANCE_TASK_RUNS
from order_service.models import (
    AssignmentStatus, OrderStatus, PaymentStatus, TransactionStatus,
    assignments, driver_states, orders, wallet_transactions,
)
from order_service.schemas import MaintenanceReport
from order_service.wallet import WalletLedger

logger = logging.getLogger("order-service.maintenance")
logger.setLevel(logging.INFO)

TERMINAL_ASSIGNMENT_STATUSES = [
    AssignmentStatus.DECLINED.value,
    AssignmentStatus.EXPIRED.value,
    AssignmentStatus.COMPLETED.value,
]


class MaintenanceReconciler:
    """
    Periodic repair sweep. Every sub-task is a conditional bulk statement
    (or a loop over already-idempotent operations), so a crashed or
    repeated run is harmless; a failing task is logged and retried next tick.
    """

    def __init__(self, database: Database, escrow: EscrowEngine, ledger: WalletLedger,
                 drivers: DriverStateRegistry, config, notifier=None, clock=utcnow):
        self.database = database
        self.escrow = escrow
        self.ledger = ledger
        self.drivers = drivers
        self.notifier = notifier
        self.clock = clock
        self.interval_seconds = config.MAINTENANCE_INTERVAL_SECONDS
        self.expire_buffer = timedelta(seconds=config.ASSIGNMENT_EXPIRE_BUFFER_SECONDS)
        self.offline_threshold = timedelta(seconds=config.DRIVER_OFFLINE_THRESHOLD_SECONDS)
        self.retention = timedelta(hours=config.ASSIGNMENT_RETENTION_HOURS)
        self.emergency_retention = timedelta(days=config.EMERGENCY_RETENTION_DAYS)
        self.grace = timedelta(seconds=config.GRACE_PERIOD_SECONDS)
        self.restaurant_timeout = timedelta(seconds=config.RESTAURANT_TIMEOUT_SECONDS)
        self._task = None

    # ------------------------- loop -------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"🧹 Maintenance started (every {self.interval_seconds}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("🧹 Maintenance stopped")

    async def _loop(self):
        while True:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"🔥 Maintenance cycle crashed: {e}")
            await asyncio.sleep(self.interval_seconds)

    async def run_cycle(self) -> MaintenanceReport:
        started_at = self.clock()
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        tasks = [
            ("expired_assignments", self.cleanup_expired_assignments),
            ("old_assignments", self.cleanup_old_assignments),
            ("stale_drivers", self.update_stale_driver_states),
            ("delivered_assignments", self.complete_delivered_assignments),
            ("driver_state_consistency", self.validate_driver_state_consistency),
            ("escrow_due_orders", self.escrow_due_orders),
            ("timed_out_orders", self.refund_timed_out_orders),
            ("wallet_drift", self.reconcile_wallets),
        ]

        results = {}
        failed = 0
        for name, task in tasks:
            try:
                results[name] = await task()
                MAINTENANCE_TASK_RUNS.labels(task=name, outcome="success").inc()
            except Exception as e:
                failed += 1
                results[name] = {"error": str(e)}
                MAINTENANCE_TASK_RUNS.labels(task=name, outcome="failed").inc()
                logger.exception(f"Maintenance task {name} failed; retrying next cycle")

        report = MaintenanceReport(
            started_at=started_at,
            duration_ms=int((loop.time() - t0) * 1000),
            tasks=results,
            tasks_completed=len(tasks) - failed,
            tasks_failed=failed,
        )
        logger.info(f"🧹 Maintenance cycle done: {report.tasks_completed} ok, {failed} failed")
        if self.notifier is not None:
            await self.notifier.emit("maintenance.completed", report.model_dump(mode="json"))
        return report

    # ------------------------- assignments -------------------------
    async def cleanup_expired_assignments(self) -> int:
        now = self.clock()
        rows = await self.database.fetch_all(
            update(assignments)
            .where(
                assignments.c.status == AssignmentStatus.OFFERED.value,
                assignments.c.expires_at < now - self.expire_buffer,
            )
            .values(status=AssignmentStatus.EXPIRED.value, updated_at=now)
            .returning(assignments.c.id)
        )
        if rows:
            logger.info(f"⏰ Expired {len(rows)} stale offer(s)")
        return len(rows)

    async def cleanup_old_assignments(self, older_than: timedelta = None) -> int:
        cutoff = self.clock() - (older_than or self.retention)
        rows = await self.database.fetch_all(
            delete(assignments)
            .where(
                assignments.c.status.in_(TERMINAL_ASSIGNMENT_STATUSES),
                assignments.c.updated_at < cutoff,
            )
            .returning(assignments.c.id)
        )
        if rows:
            logger.info(f"🗑️ Purged {len(rows)} old assignment row(s)")
        return len(rows)

    async def complete_delivered_assignments(self) -> int:
        now = self.clock()
        delivered = select(orders.c.id).where(orders.c.status == OrderStatus.DELIVERED.value)
        rows = await self.database.fetch_all(
            update(assignments)
            .where(
                assignments.c.status == AssignmentStatus.ACCEPTED.value,
                assignments.c.order_id.in_(delivered),
            )
            .values(status=AssignmentStatus.COMPLETED.value, completed_at=now, updated_at=now)
            .returning(assignments.c.id)
        )
        if rows:
            logger.info(f"🏁 Completed {len(rows)} assignment(s) left open after delivery")
        return len(rows)

    # ------------------------- drivers -------------------------
    async def update_stale_driver_states(self) -> int:
        now = self.clock()
        rows = await self.database.fetch_all(
            update(driver_states)
            .where(
                driver_states.c.is_online == True,  # noqa: E712
                driver_states.c.last_heartbeat_at < now - self.offline_threshold,
            )
            .values(is_online=False, online_since=None, updated_at=now)
            .returning(driver_states.c.driver_id)
        )
        if rows:
            logger.info(f"📴 Marked {len(rows)} silent driver(s) offline")
            await self.drivers.refresh_online_gauge()
        return len(rows)

    async def validate_driver_state_consistency(self) -> dict:
        missing = await self.database.fetch_all(
            select(assignments.c.driver_id)
            .where(
                assignments.c.status == AssignmentStatus.ACCEPTED.value,
                ~exists().where(driver_states.c.driver_id == assignments.c.driver_id),
            )
            .group_by(assignments.c.driver_id)
        )
        for row in missing:
            await self.drivers.ensure(row["driver_id"])

        recounted = await self.validate_active_assignment_counts()
        return {"created": len(missing), "recounted": recounted}

    async def validate_active_assignment_counts(self) -> int:
        """Recompute cached counts from ACCEPTED assignments; returns rows corrected."""
        actual = (
            select(func.count(assignments.c.id))
            .where(
                assignments.c.driver_id == driver_states.c.driver_id,
                assignments.c.status == AssignmentStatus.ACCEPTED.value,
            )
            .correlate(driver_states)
            .scalar_subquery()
        )
        rows = await self.database.fetch_all(
            update(driver_states)
            .where(driver_states.c.active_assignments_count != actual)
            .values(active_assignments_count=actual, updated_at=self.clock())
            .returning(driver_states.c.driver_id)
        )
        if rows:
            logger.warning(f"⚠️ Corrected active assignment counts for {len(rows)} driver(s)")
        return len(rows)

    # ------------------------- orders / money -------------------------
    async def _order_ids(self, *conditions):
        rows = await self.database.fetch_all(
            select(orders.c.id).where(*conditions).order_by(orders.c.created_at)
        )
        return [r["id"] for r in rows]

    async def escrow_due_orders(self) -> dict:
        due = await self._order_ids(
            orders.c.status == OrderStatus.PENDING.value,
            orders.c.payment_status == PaymentStatus.PENDING.value,
            orders.c.created_at <= self.clock() - self.grace,
            # past the restaurant timeout the order is refunded, not held
            orders.c.created_at >= self.clock() - self.restaurant_timeout,
        )
        escrowed, skipped = 0, 0
        for order_id in due:
            try:
                await self.escrow.process_escrow_payment(order_id)
                escrowed += 1
            except ServiceError as e:
                skipped += 1
                logger.warning(f"Escrow hold for order {order_id} skipped: {e.message}")
        return {"escrowed": escrowed, "skipped": skipped}

    async def refund_timed_out_orders(self) -> dict:
        timed_out = await self._order_ids(
            orders.c.status == OrderStatus.PENDING.value,
            orders.c.accepted_at.is_(None),
            orders.c.created_at < self.clock() - self.restaurant_timeout,
        )
        refunded, skipped = 0, 0
        for order_id in timed_out:
            try:
                await self.escrow.process_timeout_refund(order_id)
                refunded += 1
            except ServiceError as e:
                skipped += 1
                logger.warning(f"Timeout refund for order {order_id} skipped: {e.message}")
        return {"refunded": refunded, "skipped": skipped}

    async def reconcile_wallets(self) -> int:
        return len(await self.ledger.reconcile())

    # ------------------------- operator paths -------------------------
    async def emergency_cleanup(self) -> dict:
        """Force-expire offers, take every driver offline, re-derive counts, purge old rows."""
        now = self.clock()
        expired = await self.database.fetch_all(
            update(assignments)
            .where(assignments.c.status == AssignmentStatus.OFFERED.value)
            .values(status=AssignmentStatus.EXPIRED.value, updated_at=now)
            .returning(assignments.c.id)
        )
        offline = await self.database.fetch_all(
            update(driver_states)
            .where(driver_states.c.is_online == True)  # noqa: E712
            .values(is_online=False, online_since=None, updated_at=now)
            .returning(driver_states.c.driver_id)
        )
        consistency = await self.validate_driver_state_consistency()
        purged = await self.cleanup_old_assignments(older_than=self.emergency_retention)
        await self.drivers.refresh_online_gauge()

        result = {
            "expired_offers": len(expired),
            "drivers_offline": len(offline),
            "driver_states_created": consistency["created"],
            "counts_corrected": consistency["recounted"],
            "purged_assignments": purged,
        }
        logger.warning(f"🚨 Emergency cleanup: {result}")
        return result

    async def _count_by(self, column, *conditions) -> dict:
        rows = await self.database.fetch_all(
            select(column, func.count().label("n")).where(*conditions).group_by(column)
        )
        return {r[column.name]: r["n"] for r in rows}

    async def system_health(self) -> dict:
        drivers = await self._count_by(driver_states.c.is_online)
        pending_tx = await self.database.fetch_val(
            select(func.count()).select_from(wallet_transactions)
            .where(wallet_transactions.c.status == TransactionStatus.PENDING.value)
        )
        live_offers = await self.database.fetch_val(
            select(func.count()).select_from(assignments).where(
                assignments.c.status == AssignmentStatus.OFFERED.value,
                assignments.c.expires_at > self.clock(),
            )
        )
        return {
            "timestamp": self.clock(),
            "maintenance_running": self.running,
            "drivers": {
                "online": drivers.get(True, 0),
                "offline": drivers.get(False, 0),
            },
            "assignments": await self._count_by(assignments.c.status),
            "live_offers": live_offers,
            "orders": await self._count_by(orders.c.status),
            "pending_wallet_transactions": pending_tx,
        }
