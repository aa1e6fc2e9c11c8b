# order_service/driver_state.py
import logging

from databases import Database
from sqlalchemy import case, func, select, update

from order_service.database import insert_ignore, row_to_dict, utcnow
from order_service.errors import NotFound
from order_service.metrics import ONLINE_DRIVERS
from order_service.models import driver_states
from order_service.schemas import DriverStateView

logger = logging.getLogger("order-service.drivers")
logger.setLevel(logging.INFO)


class DriverStateRegistry:
    """Online flag, heartbeat and the cached count of accepted assignments per driver."""

    def __init__(self, database: Database, clock=utcnow):
        self.database = database
        self.clock = clock

    async def ensure(self, driver_id: str):
        await self.database.execute(
            insert_ignore(self.database, driver_states).values(
                driver_id=driver_id,
                is_online=False,
                online_since=None,
                active_assignments_count=0,
                last_heartbeat_at=None,
                updated_at=self.clock(),
            )
        )

    async def get(self, driver_id: str) -> DriverStateView:
        row = await self.database.fetch_one(
            driver_states.select().where(driver_states.c.driver_id == driver_id)
        )
        if row is None:
            raise NotFound("Driver state", driver_id)
        return DriverStateView(**row_to_dict(row, driver_states))

    async def set_online(self, driver_id: str, is_online: bool) -> DriverStateView:
        now = self.clock()
        await self.ensure(driver_id)

        if is_online:
            values = {
                "is_online": True,
                # keep the original start of an uninterrupted online session
                "online_since": case(
                    (driver_states.c.is_online == True, driver_states.c.online_since),  # noqa: E712
                    else_=now,
                ),
                "last_heartbeat_at": now,
            }
        else:
            values = {"is_online": False, "online_since": None}

        await self.database.execute(
            update(driver_states)
            .where(driver_states.c.driver_id == driver_id)
            .values(updated_at=now, **values)
        )
        await self.refresh_online_gauge()
        logger.info(f"🚗 Driver {driver_id} is now {'online' if is_online else 'offline'}")
        return await self.get(driver_id)

    async def heartbeat(self, driver_id: str) -> DriverStateView:
        return await self.set_online(driver_id, True)

    async def adjust_active_count(self, driver_id: str, delta: int):
        """Move the cached counter by `delta`, never below zero."""
        await self.ensure(driver_id)
        count = driver_states.c.active_assignments_count
        await self.database.execute(
            update(driver_states)
            .where(driver_states.c.driver_id == driver_id)
            .values(
                active_assignments_count=case((count + delta < 0, 0), else_=count + delta),
                updated_at=self.clock(),
            )
        )

    async def refresh_online_gauge(self) -> int:
        online = await self.database.fetch_val(
            select(func.count()).select_from(driver_states).where(driver_states.c.is_online == True)  # noqa: E712
        )
        ONLINE_DRIVERS.set(online)
        return online
