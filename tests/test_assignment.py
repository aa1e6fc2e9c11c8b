"""Tests for AssignmentCoordinator: offers, the accept race, declines and completion."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from order_service.errors import Conflict, Forbidden, InvalidTransition, ValidationError
from order_service.models import AssignmentStatus


async def ready_order(svc):
    await svc.fund("cust-1", "300.00")
    order = await svc.place()
    await svc.to_ready(order.id)
    return order


class TestOffers:
    def test_pending_order_cannot_be_offered(self, run):
        async def scenario(svc):
            await svc.fund("cust-1", "300.00")
            order = await svc.place()
            with pytest.raises(InvalidTransition):
                await svc.assignments.offer_assignment(order.id, ["drv-1"])

        run(scenario)

    def test_offers_carry_ttl(self, run, clock, notifier):
        async def scenario(svc):
            order = await ready_order(svc)
            return await svc.assignments.offer_assignment(order.id, ["drv-1", "drv-2"])

        offers = run(scenario)
        assert [o.driver_id for o in offers] == ["drv-1", "drv-2"]
        assert all(o.status == AssignmentStatus.OFFERED for o in offers)
        assert offers[0].expires_at - offers[0].offered_at == timedelta(seconds=30)
        assert "assignment.offered" in notifier.types()

    def test_duplicates_and_live_offers_skipped(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            await svc.assignments.offer_assignment(order.id, ["drv-1"])
            again = await svc.assignments.offer_assignment(order.id, ["drv-1", "drv-2", "drv-2"])
            return again, await svc.assignments.list_assignments(order.id)

        again, all_offers = run(scenario)
        assert [o.driver_id for o in again] == ["drv-2"]
        assert len(all_offers) == 2

    def test_waves_only_move_forward(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            await svc.assignments.offer_assignment(order.id, ["drv-1"], wave=2)
            with pytest.raises(ValidationError):
                await svc.assignments.offer_assignment(order.id, ["drv-2"], wave=1)
            await svc.assignments.offer_assignment(order.id, ["drv-3"], wave=3)
            return await svc.assignments.current_wave(order.id)

        assert run(scenario) == 3


class TestAccept:
    def test_concurrent_accepts_have_one_winner(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            await svc.assignments.offer_assignment(order.id, ["drv-1", "drv-2"])
            results = await asyncio.gather(
                svc.assignments.accept_assignment(order.id, "drv-1"),
                svc.assignments.accept_assignment(order.id, "drv-2"),
                return_exceptions=True,
            )
            final = await svc.lifecycle.get_order(order.id)
            return results, final

        results, final = run(scenario)
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1 and isinstance(losers[0], Conflict)
        assert final.driver_id == winners[0].driver_id

    def test_winner_count_and_earnings(self, run, clock):
        async def scenario(svc):
            order = await ready_order(svc)
            accepted = await svc.assign(order.id, "drv-1")
            return (
                accepted,
                await svc.lifecycle.get_order(order.id),
                await svc.drivers.get("drv-1"),
                clock(),
            )

        accepted, order, driver, now = run(scenario)
        assert accepted.status == AssignmentStatus.ACCEPTED
        assert order.driver_id == "drv-1"
        assert order.driver_earning == Decimal("32.00")
        assert order.estimated_pickup_time == now + timedelta(minutes=15)
        assert driver.active_assignments_count == 1

    def test_second_driver_after_assignment(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            await svc.assignments.offer_assignment(order.id, ["drv-1", "drv-2"])
            await svc.assignments.accept_assignment(order.id, "drv-1")
            with pytest.raises(Conflict) as exc:
                await svc.assignments.accept_assignment(order.id, "drv-2")
            return exc.value, await svc.drivers.get("drv-1")

        error, driver = run(scenario)
        assert error.message == "Order already assigned or no longer available"
        assert driver.active_assignments_count == 1

    def test_expired_offer(self, run, clock):
        async def scenario(svc):
            order = await ready_order(svc)
            await svc.assignments.offer_assignment(order.id, ["drv-1"])
            clock.advance(31)
            with pytest.raises(Conflict) as exc:
                await svc.assignments.accept_assignment(order.id, "drv-1")
            return exc.value, await svc.lifecycle.get_order(order.id)

        error, order = run(scenario)
        assert error.message == "Offer is no longer available"
        assert order.driver_id is None

    def test_accept_without_offer(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            accepted = await svc.assignments.accept_assignment(order.id, "drv-9")
            return accepted, await svc.assignments.list_assignments(order.id)

        accepted, rows = run(scenario)
        assert accepted.driver_id == "drv-9"
        assert accepted.wave == 1
        assert [r.status for r in rows] == [AssignmentStatus.ACCEPTED]


class TestDeclineAndComplete:
    def test_decline(self, run, notifier):
        async def scenario(svc):
            order = await ready_order(svc)
            offers = await svc.assignments.offer_assignment(order.id, ["drv-1"])
            declined = await svc.assignments.decline_assignment(offers[0].id, "drv-1")
            with pytest.raises(Conflict):
                await svc.assignments.decline_assignment(offers[0].id, "drv-1")
            return declined

        declined = run(scenario)
        assert declined.status == AssignmentStatus.DECLINED
        assert declined.responded_at is not None
        assert "assignment.declined" in notifier.types()

    def test_expire_single_offer(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            offers = await svc.assignments.offer_assignment(order.id, ["drv-1"])
            expired = await svc.assignments.expire_assignment(offers[0].id)
            with pytest.raises(Conflict):
                await svc.assignments.expire_assignment(offers[0].id)
            with pytest.raises(Conflict) as exc:
                await svc.assignments.accept_assignment(order.id, "drv-1")
            return expired, exc.value, await svc.lifecycle.get_order(order.id)

        expired, error, order = run(scenario)
        assert expired.status == AssignmentStatus.EXPIRED
        assert expired.responded_at is not None
        assert error.message == "Offer is no longer available"
        assert order.driver_id is None

    def test_decline_someone_elses_offer(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            offers = await svc.assignments.offer_assignment(order.id, ["drv-1"])
            with pytest.raises(Forbidden):
                await svc.assignments.decline_assignment(offers[0].id, "drv-2")

        run(scenario)

    def test_complete_decrements_count(self, run):
        async def scenario(svc):
            order = await ready_order(svc)
            await svc.assign(order.id, "drv-1")
            first = await svc.assignments.complete_assignment(order.id, "drv-1")
            second = await svc.assignments.complete_assignment(order.id, "drv-1")
            return first, second, await svc.drivers.get("drv-1")

        first, second, driver = run(scenario)
        assert first is True
        assert second is False
        assert driver.active_assignments_count == 0


class TestDriverState:
    def test_online_since_survives_heartbeats(self, run, clock):
        async def scenario(svc):
            first = await svc.drivers.set_online("drv-1", True)
            clock.advance(30)
            beat = await svc.drivers.heartbeat("drv-1")
            offline = await svc.drivers.set_online("drv-1", False)
            return first, beat, offline

        first, beat, offline = run(scenario)
        assert beat.online_since == first.online_since
        assert beat.last_heartbeat_at > first.last_heartbeat_at
        assert offline.is_online is False and offline.online_since is None

    def test_count_never_negative(self, run):
        async def scenario(svc):
            await svc.drivers.adjust_active_count("drv-1", -3)
            return await svc.drivers.get("drv-1")

        assert run(scenario).active_assignments_count == 0
