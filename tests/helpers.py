from datetime import datetime, timedelta
from decimal import Decimal

from jose import jwt

from order_service.assignment import AssignmentCoordinator
from order_service.config import Config
from order_service.driver_state import DriverStateRegistry
from order_service.escrow import EscrowEngine
from order_service.lifecycle import OrderLifecycle
from order_service.maintenance import MaintenanceReconciler
from order_service.models import OwnerKind, PaymentMethod
from order_service.pricing import CommissionPolicy
from order_service.schemas import OrderCreate, OrderLine
from order_service.wallet import WalletLedger
from shared.auth import JWT_ALGORITHM, JWT_SECRET

T0 = datetime(2024, 3, 1, 12, 0, 0)


class ServiceConfig(Config):
    DATABASE_URL = None
    USE_AWS = False
    MAINTENANCE_ENABLED = False
    CORS_ORIGINS = ["*"]


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def emit(self, event_type, data, trace_id=None):
        self.events.append((event_type, data))

    def types(self):
        return [event_type for event_type, _ in self.events]


class Services:
    """The service graph the app builds at startup, wired to one database."""

    def __init__(self, database, clock, notifier, config=ServiceConfig):
        self.database = database
        self.clock = clock
        self.notifier = notifier
        self.config = config
        self.policy = CommissionPolicy.from_config(config)
        self.ledger = WalletLedger(database, clock, config.PLATFORM_ACCOUNT_ID)
        self.drivers = DriverStateRegistry(database, clock)
        self.escrow = EscrowEngine(database, self.ledger, notifier, config, clock)
        self.assignments = AssignmentCoordinator(database, self.drivers, notifier, config, self.policy, clock)
        self.lifecycle = OrderLifecycle(
            database, self.escrow, self.ledger, self.assignments, notifier, config, self.policy, clock
        )
        self.reconciler = MaintenanceReconciler(
            database, self.escrow, self.ledger, self.drivers, config, notifier, clock
        )

    async def fund(self, customer_id: str, amount: str):
        tx = await self.ledger.request_top_up(customer_id, Decimal(amount))
        await self.ledger.approve_transaction(tx.id, "admin-1")

    async def place(self, customer_id="cust-1", restaurant_id="rest-1", subtotal="210.00",
                    fee="40.00", method=PaymentMethod.WALLET):
        body = OrderCreate(
            restaurant_id=restaurant_id,
            items=[OrderLine(name="Family thali", quantity=1, unit_price=Decimal(subtotal))],
            delivery_fee=Decimal(fee),
            payment_method=method,
        )
        return await self.lifecycle.place_order(customer_id, body)

    async def to_ready(self, order_id: str, restaurant_id="rest-1"):
        """Past the grace window, accepted, prepared and ready for pickup."""
        self.clock.advance(61)
        await self.lifecycle.accept_order(order_id, restaurant_id)
        await self.lifecycle.start_preparing(order_id, restaurant_id)
        return await self.lifecycle.mark_ready(order_id, restaurant_id)

    async def assign(self, order_id: str, driver_id="drv-1"):
        await self.assignments.offer_assignment(order_id, [driver_id])
        return await self.assignments.accept_assignment(order_id, driver_id)

    async def balance(self, owner_id: str, kind=OwnerKind.CUSTOMER) -> Decimal:
        return (await self.ledger.get_or_create_wallet(owner_id, kind)).balance


def bearer(sub: str, role: str) -> dict:
    token = jwt.encode({"sub": sub, "role": role}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}
