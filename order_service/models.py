# models.py
import enum
from sqlalchemy import (
    Table, Column, String, Integer, Numeric, Boolean, DateTime, Text, MetaData,
    UniqueConstraint, Index,
)

metadata = MetaData()

MONEY = Numeric(12, 2)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    ESCROWED = "ESCROWED"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, enum.Enum):
    WALLET = "WALLET"
    CARD = "CARD"
    UPI = "UPI"
    CASH = "CASH"


class AssignmentStatus(str, enum.Enum):
    OFFERED = "OFFERED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"


class OwnerKind(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    DRIVER = "DRIVER"
    RESTAURANT = "RESTAURANT"
    PLATFORM = "PLATFORM"


class TransactionType(str, enum.Enum):
    TOPUP = "TOPUP"
    ORDER_PAYMENT = "ORDER_PAYMENT"
    REFUND = "REFUND"
    EARNING = "EARNING"
    WITHDRAWAL = "WITHDRAWAL"
    COMMISSION_DEDUCTION = "COMMISSION_DEDUCTION"
    PLATFORM_COMMISSION = "PLATFORM_COMMISSION"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ------------------------
# Orders table
# ------------------------
orders = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("restaurant_id", String, nullable=False, index=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("status", String, nullable=False, default=OrderStatus.PENDING.value, index=True),
    Column("payment_status", String, nullable=False, default=PaymentStatus.PENDING.value),
    Column("payment_method", String, nullable=False),
    Column("items", Text, nullable=False),
    Column("items_subtotal", MONEY, nullable=False),
    Column("delivery_fee", MONEY, nullable=False),
    Column("total_price", MONEY, nullable=False),
    Column("commission_rate", Numeric(5, 4), nullable=False),
    Column("restaurant_commission", MONEY, nullable=False),
    Column("delivery_commission", MONEY, nullable=False),
    Column("platform_earnings", MONEY, nullable=False),
    Column("driver_earning", MONEY, nullable=False),
    Column("estimated_pickup_time", DateTime, nullable=True),
    Column("cancellation_reason", String, nullable=True),
    Column("refund_requires_manual_processing", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False),
    Column("accepted_at", DateTime, nullable=True),
    Column("preparing_at", DateTime, nullable=True),
    Column("ready_at", DateTime, nullable=True),
    Column("picked_up_at", DateTime, nullable=True),
    Column("delivered_at", DateTime, nullable=True),
    Column("cancelled_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=False),
)

# ------------------------
# Driver assignments (one row per offer)
# ------------------------
assignments = Table(
    "assignments",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, index=True),
    Column("driver_id", String, nullable=False, index=True),
    Column("status", String, nullable=False, default=AssignmentStatus.OFFERED.value),
    Column("wave", Integer, nullable=False, default=1),
    Column("offered_at", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("responded_at", DateTime, nullable=True),
    Column("accepted_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=False),
    Index("ix_assignments_status_expires", "status", "expires_at"),
)

# ------------------------
# Driver state (cached counters, heartbeat)
# ------------------------
driver_states = Table(
    "driver_states",
    metadata,
    Column("driver_id", String, primary_key=True),
    Column("is_online", Boolean, nullable=False, default=False),
    Column("online_since", DateTime, nullable=True),
    Column("active_assignments_count", Integer, nullable=False, default=0),
    Column("last_heartbeat_at", DateTime, nullable=True),
    Column("updated_at", DateTime, nullable=False),
)

# ------------------------
# Wallets
# ------------------------
wallet_accounts = Table(
    "wallet_accounts",
    metadata,
    Column("id", String, primary_key=True),
    Column("owner_id", String, nullable=False),
    Column("owner_kind", String, nullable=False),
    Column("balance", MONEY, nullable=False, default=0),
    Column("total_earnings", MONEY, nullable=False, default=0),
    Column("total_top_ups", MONEY, nullable=False, default=0),
    Column("total_spent", MONEY, nullable=False, default=0),
    Column("total_refunds", MONEY, nullable=False, default=0),
    Column("total_withdrawn", MONEY, nullable=False, default=0),
    Column("total_commission_paid", MONEY, nullable=False, default=0),
    Column("can_withdraw", Boolean, nullable=False, default=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_activity_at", DateTime, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
    UniqueConstraint("owner_id", "owner_kind", name="uix_wallet_owner"),
)

wallet_transactions = Table(
    "wallet_transactions",
    metadata,
    Column("id", String, primary_key=True),
    Column("owner_id", String, nullable=False),
    Column("owner_kind", String, nullable=False),
    Column("amount", MONEY, nullable=False),
    Column("type", String, nullable=False),
    Column("status", String, nullable=False),
    Column("description", String, nullable=True),
    Column("related_order_id", String, nullable=True, index=True),
    Column("linked_transaction_id", String, nullable=True),
    Column("reference", String, nullable=True),
    Column("admin_id", String, nullable=True),
    Column("admin_notes", Text, nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("processed_at", DateTime, nullable=True),
    Index("ix_wallet_tx_owner", "owner_id", "owner_kind"),
)
