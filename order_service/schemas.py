# schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PlainSerializer

from order_service.models import (
    AssignmentStatus, OrderStatus, OwnerKind, PaymentMethod, PaymentStatus,
    TransactionStatus, TransactionType,
)
from order_service.pricing import round_cents

# Money is exact everywhere; rounding to two places happens only on the way out.
Money = Annotated[
    Decimal,
    PlainSerializer(lambda v: str(round_cents(v)), return_type=str, when_used="json"),
]
PositiveAmount = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]


# -------------------------
# Orders
# -------------------------
class OrderLine(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Annotated[Decimal, Field(ge=0, decimal_places=2)]


class OrderCreate(BaseModel):
    restaurant_id: str = Field(min_length=1)
    items: List[OrderLine] = Field(min_length=1)
    delivery_fee: Annotated[Decimal, Field(ge=0, decimal_places=2)] = Decimal("0")
    payment_method: PaymentMethod
    commission_rate: Optional[Annotated[Decimal, Field(ge=0, lt=1)]] = None

    @property
    def items_subtotal(self) -> Decimal:
        return sum((line.unit_price * line.quantity for line in self.items), Decimal("0"))


class OrderView(BaseModel):
    """Read projection of an order's lifecycle and financial fields."""

    id: str
    customer_id: str
    restaurant_id: str
    driver_id: Optional[str] = None
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    items: List[OrderLine]
    items_subtotal: Money
    delivery_fee: Money
    total_price: Money
    commission_rate: Decimal
    restaurant_commission: Money
    delivery_commission: Money
    platform_earnings: Money
    driver_earning: Money
    estimated_pickup_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    refund_requires_manual_processing: bool = False
    created_at: datetime
    accepted_at: Optional[datetime] = None
    preparing_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class StatusUpdate(BaseModel):
    status: OrderStatus


class CancelRequest(BaseModel):
    reason: str = "Cancelled by customer"


# -------------------------
# Transition commands
# -------------------------
class AcceptOrder(BaseModel):
    kind: Literal["accept"] = "accept"
    restaurant_id: str


class StartPreparing(BaseModel):
    kind: Literal["start_preparing"] = "start_preparing"
    restaurant_id: str


class MarkReady(BaseModel):
    kind: Literal["mark_ready"] = "mark_ready"
    restaurant_id: str


class PickUpOrder(BaseModel):
    kind: Literal["pick_up"] = "pick_up"
    driver_id: str


class StartDelivery(BaseModel):
    kind: Literal["start_delivery"] = "start_delivery"
    driver_id: str


class ReleaseEscrow(BaseModel):
    kind: Literal["release_escrow"] = "release_escrow"
    driver_id: str


class RefundOrder(BaseModel):
    kind: Literal["refund"] = "refund"
    reason: str = Field(min_length=1)


OrderCommand = Annotated[
    Union[AcceptOrder, StartPreparing, MarkReady, PickUpOrder, StartDelivery, ReleaseEscrow, RefundOrder],
    Field(discriminator="kind"),
]


# -------------------------
# Escrow results
# -------------------------
class CancellationCheck(BaseModel):
    can_cancel: bool
    reason: str
    message: str
    current_status: OrderStatus
    time_remaining_seconds: Optional[int] = None


class TimeoutCheck(BaseModel):
    has_timed_out: bool
    order_age_seconds: int
    timeout_threshold_seconds: int
    can_refund: bool


class EscrowResult(BaseModel):
    order_id: str
    amount: Money
    payment_method: PaymentMethod
    payment_status: PaymentStatus


class RefundResult(BaseModel):
    order_id: str
    refund_amount: Money
    reason: str
    refund_processed: bool
    requires_manual_processing: bool


class ReleaseResult(BaseModel):
    order_id: str
    restaurant_credited: Money
    driver_credited: Money
    platform_earnings: Money
    total_released: Money


# -------------------------
# Wallets
# -------------------------
class WalletView(BaseModel):
    owner_id: str
    owner_kind: OwnerKind
    balance: Money
    total_earnings: Money
    total_top_ups: Money
    total_spent: Money
    total_refunds: Money
    total_withdrawn: Money
    total_commission_paid: Money
    can_withdraw: bool
    is_active: bool
    last_activity_at: Optional[datetime] = None


class TransactionView(BaseModel):
    id: str
    owner_id: str
    owner_kind: OwnerKind
    amount: Money
    type: TransactionType
    status: TransactionStatus
    description: Optional[str] = None
    related_order_id: Optional[str] = None
    linked_transaction_id: Optional[str] = None
    reference: Optional[str] = None
    admin_id: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


class TransactionPage(BaseModel):
    transactions: List[TransactionView]
    page: int
    limit: int
    total: int
    pages: int


class BalanceCheck(BaseModel):
    current_balance: Money
    required_amount: Money
    has_sufficient_balance: bool


class TopUpRequest(BaseModel):
    amount: PositiveAmount
    reference: Optional[str] = None


class WithdrawalRequest(BaseModel):
    amount: PositiveAmount


class AdminDecision(BaseModel):
    notes: Optional[str] = None


class WalletDrift(BaseModel):
    owner_id: str
    owner_kind: OwnerKind
    balance: Money
    ledger_sum: Money
    drift: Money


# -------------------------
# Assignments / drivers
# -------------------------
class OfferRequest(BaseModel):
    driver_ids: List[str] = Field(min_length=1)
    wave: int = Field(default=1, ge=1)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class AssignmentView(BaseModel):
    id: str
    order_id: str
    driver_id: str
    status: AssignmentStatus
    wave: int
    offered_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class DriverStateView(BaseModel):
    driver_id: str
    is_online: bool
    online_since: Optional[datetime] = None
    active_assignments_count: int
    last_heartbeat_at: Optional[datetime] = None


class AvailabilityUpdate(BaseModel):
    is_online: bool


# -------------------------
# Maintenance
# -------------------------
class MaintenanceReport(BaseModel):
    started_at: datetime
    duration_ms: int
    tasks: Dict[str, Any]
    tasks_completed: int
    tasks_failed: int
