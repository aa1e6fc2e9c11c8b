# order_service/assignment.py
import uuid
import logging
from datetime import timedelta
from decimal import Decimal
from typing import List

from databases import Database
from sqlalchemy import func, select, update

from order_service.database import load_order, row_to_dict, utcnow
from order_service.driver_state import DriverStateRegistry
from order_service.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from order_service.metrics import ASSIGNMENT_RESPONSES
from order_service.models import AssignmentStatus, OrderStatus, assignments, orders
from order_service.pricing import CommissionPolicy, compute_breakdown, to_money
from order_service.schemas import AssignmentView
from order_service.state_machines import ASSIGNABLE_STATUSES

logger = logging.getLogger("order-service.assignment")
logger.setLevel(logging.INFO)


def _is_live(row: dict, now) -> bool:
    return row["status"] == AssignmentStatus.OFFERED.value and row["expires_at"] > now


class AssignmentCoordinator:
    """
    Binds exactly one driver to an order.

    Offers go out in waves; the first driver whose conditional update on
    the order row matches wins, every other acceptance gets a Conflict.
    """

    def __init__(self, database: Database, drivers: DriverStateRegistry, notifier, config,
                 policy: CommissionPolicy, clock=utcnow):
        self.database = database
        self.drivers = drivers
        self.notifier = notifier
        self.policy = policy
        self.clock = clock
        self.offer_ttl_seconds = config.OFFER_TTL_SECONDS
        self.pickup_estimate = timedelta(minutes=config.PICKUP_ESTIMATE_MINUTES)

    async def _emit(self, event_type: str, data: dict, trace_id: str = None):
        if self.notifier is not None:
            await self.notifier.emit(event_type, data, trace_id)

    async def _fetch(self, assignment_id: str) -> dict:
        row = await self.database.fetch_one(
            assignments.select().where(assignments.c.id == assignment_id)
        )
        if row is None:
            raise NotFound("Assignment", assignment_id)
        return row_to_dict(row, assignments)

    async def get_assignment(self, assignment_id: str) -> AssignmentView:
        return AssignmentView(**await self._fetch(assignment_id))

    async def list_assignments(self, order_id: str) -> List[AssignmentView]:
        rows = await self.database.fetch_all(
            assignments.select()
            .where(assignments.c.order_id == order_id)
            .order_by(assignments.c.wave, assignments.c.offered_at, assignments.c.driver_id)
        )
        return [AssignmentView(**row_to_dict(r, assignments)) for r in rows]

    async def current_wave(self, order_id: str) -> int:
        wave = await self.database.fetch_val(
            select(func.max(assignments.c.wave)).where(assignments.c.order_id == order_id)
        )
        return wave or 0

    # ------------------------- offers -------------------------
    async def offer_assignment(self, order_id: str, driver_ids: List[str], wave: int = 1,
                               ttl_seconds: int = None, trace_id: str = None) -> List[AssignmentView]:
        order = await load_order(self.database, order_id)
        status = OrderStatus(order["status"])
        if status not in ASSIGNABLE_STATUSES:
            raise InvalidTransition(status.value, "DRIVER_ASSIGNED")
        if order["driver_id"]:
            raise Conflict("Order already has a driver")

        if wave < 1:
            raise ValidationError("Wave must be at least 1")
        current = await self.current_wave(order_id)
        if wave < current:
            raise ValidationError(f"Wave {wave} is lower than the current wave {current}")

        now = self.clock()
        live = await self.database.fetch_all(
            select(assignments.c.driver_id).where(
                assignments.c.order_id == order_id,
                assignments.c.status == AssignmentStatus.OFFERED.value,
                assignments.c.expires_at > now,
            )
        )
        skip = {r["driver_id"] for r in live}

        expires_at = now + timedelta(seconds=ttl_seconds or self.offer_ttl_seconds)
        new_rows = []
        for driver_id in dict.fromkeys(driver_ids):
            if driver_id in skip:
                logger.info(f"[TRACE {trace_id}] Driver {driver_id} already holds a live offer for {order_id}")
                continue
            new_rows.append({
                "id": str(uuid.uuid4()),
                "order_id": order_id,
                "driver_id": driver_id,
                "status": AssignmentStatus.OFFERED.value,
                "wave": wave,
                "offered_at": now,
                "expires_at": expires_at,
                "responded_at": None,
                "accepted_at": None,
                "completed_at": None,
                "updated_at": now,
            })

        if new_rows:
            async with self.database.transaction():
                await self.database.execute_many(assignments.insert(), values=new_rows)

            logger.info(f"[TRACE {trace_id}] 📣 Order {order_id} offered to {len(new_rows)} driver(s) in wave {wave}")
            await self._emit("assignment.offered", {
                "order_id": order_id,
                "wave": wave,
                "driver_ids": [r["driver_id"] for r in new_rows],
                "expires_at": expires_at,
            }, trace_id)

        return [AssignmentView(**r) for r in new_rows]

    # ------------------------- driver responses -------------------------
    async def accept_assignment(self, order_id: str, driver_id: str, trace_id: str = None) -> AssignmentView:
        now = self.clock()
        order = await load_order(self.database, order_id)
        offers = await self.database.fetch_all(
            assignments.select()
            .where(assignments.c.order_id == order_id, assignments.c.driver_id == driver_id)
            .order_by(assignments.c.wave.desc())
        )
        offers = [row_to_dict(r, assignments) for r in offers]
        live = [o for o in offers if _is_live(o, now)]
        if offers and not live:
            ASSIGNMENT_RESPONSES.labels(outcome="stale").inc()
            raise Conflict("Offer is no longer available")

        # Earnings are re-derived from the same formula used at checkout
        breakdown = compute_breakdown(
            to_money(order["items_subtotal"]), to_money(order["delivery_fee"]), self.policy,
            Decimal(str(order["commission_rate"])),
        )

        try:
            async with self.database.transaction():
                rows = await self.database.fetch_all(
                    update(orders)
                    .where(
                        orders.c.id == order_id,
                        orders.c.driver_id.is_(None),
                        orders.c.status.in_([s.value for s in ASSIGNABLE_STATUSES]),
                    )
                    .values(
                        driver_id=driver_id,
                        restaurant_commission=breakdown.restaurant_commission,
                        delivery_commission=breakdown.delivery_commission,
                        platform_earnings=breakdown.platform_earnings,
                        driver_earning=breakdown.driver_earning,
                        estimated_pickup_time=now + self.pickup_estimate,
                        updated_at=now,
                    )
                    .returning(orders.c.id)
                )
                if not rows:
                    raise Conflict("Order already assigned or no longer available")

                if live:
                    assignment_id = live[0]["id"]
                    accepted = await self.database.fetch_all(
                        update(assignments)
                        .where(
                            assignments.c.id == assignment_id,
                            assignments.c.status == AssignmentStatus.OFFERED.value,
                        )
                        .values(
                            status=AssignmentStatus.ACCEPTED.value,
                            responded_at=now,
                            accepted_at=now,
                            updated_at=now,
                        )
                        .returning(assignments.c.id)
                    )
                    if not accepted:
                        raise Conflict("Offer is no longer available")
                else:
                    # Driver took the order without an offer
                    assignment_id = str(uuid.uuid4())
                    await self.database.execute(
                        assignments.insert().values(
                            id=assignment_id,
                            order_id=order_id,
                            driver_id=driver_id,
                            status=AssignmentStatus.ACCEPTED.value,
                            wave=max(await self.current_wave(order_id), 1),
                            offered_at=now,
                            expires_at=now,
                            responded_at=now,
                            accepted_at=now,
                            updated_at=now,
                        )
                    )

                await self.drivers.adjust_active_count(driver_id, 1)
        except Conflict:
            ASSIGNMENT_RESPONSES.labels(outcome="conflict").inc()
            logger.info(f"[TRACE {trace_id}] ⚔️ Driver {driver_id} lost the race for order {order_id}")
            raise

        ASSIGNMENT_RESPONSES.labels(outcome="accepted").inc()
        logger.info(f"[TRACE {trace_id}] ✅ Driver {driver_id} assigned to order {order_id}")
        await self._emit("assignment.accepted", {
            "order_id": order_id,
            "driver_id": driver_id,
            "assignment_id": assignment_id,
            "driver_earning": breakdown.driver_earning,
            "estimated_pickup_time": now + self.pickup_estimate,
        }, trace_id)
        return await self.get_assignment(assignment_id)

    async def _respond(self, assignment_id: str, new_status: AssignmentStatus, driver_id: str = None) -> AssignmentView:
        now = self.clock()
        query = update(assignments).where(
            assignments.c.id == assignment_id,
            assignments.c.status == AssignmentStatus.OFFERED.value,
        )
        if driver_id is not None:
            query = query.where(assignments.c.driver_id == driver_id)

        rows = await self.database.fetch_all(
            query.values(status=new_status.value, responded_at=now, updated_at=now)
            .returning(assignments.c.id)
        )
        if not rows:
            existing = await self._fetch(assignment_id)
            if driver_id is not None and existing["driver_id"] != driver_id:
                raise Forbidden("Assignment belongs to another driver")
            raise Conflict(f"Assignment is already {existing['status']}")
        return await self.get_assignment(assignment_id)

    async def decline_assignment(self, assignment_id: str, driver_id: str = None,
                                 trace_id: str = None) -> AssignmentView:
        view = await self._respond(assignment_id, AssignmentStatus.DECLINED, driver_id)
        ASSIGNMENT_RESPONSES.labels(outcome="declined").inc()
        logger.info(f"[TRACE {trace_id}] 🙅 Driver {view.driver_id} declined order {view.order_id}")
        await self._emit("assignment.declined", {
            "order_id": view.order_id,
            "driver_id": view.driver_id,
            "assignment_id": assignment_id,
            "wave": view.wave,
        }, trace_id)
        return view

    async def expire_assignment(self, assignment_id: str) -> AssignmentView:
        view = await self._respond(assignment_id, AssignmentStatus.EXPIRED)
        ASSIGNMENT_RESPONSES.labels(outcome="expired").inc()
        return view

    async def complete_assignment(self, order_id: str, driver_id: str) -> bool:
        """ACCEPTED -> COMPLETED after delivery; False when there was nothing to complete."""
        now = self.clock()
        async with self.database.transaction():
            rows = await self.database.fetch_all(
                update(assignments)
                .where(
                    assignments.c.order_id == order_id,
                    assignments.c.driver_id == driver_id,
                    assignments.c.status == AssignmentStatus.ACCEPTED.value,
                )
                .values(status=AssignmentStatus.COMPLETED.value, completed_at=now, updated_at=now)
                .returning(assignments.c.id)
            )
            if rows:
                await self.drivers.adjust_active_count(driver_id, -len(rows))

        if rows:
            logger.info(f"🏁 Assignment for order {order_id} completed by driver {driver_id}")
        return bool(rows)
