from order_service.errors import InvalidTransition, OrderTerminal, InvalidPaymentState
from order_service.models import OrderStatus, PaymentStatus

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
    OrderStatus.ACCEPTED: {OrderStatus.PREPARING},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.PICKED_UP},
    OrderStatus.READY: {OrderStatus.PICKED_UP},
    OrderStatus.PICKED_UP: {OrderStatus.DELIVERING},
    OrderStatus.DELIVERING: {OrderStatus.DELIVERED},
}

TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

# Statuses a driver can be bound to the order in
ASSIGNABLE_STATUSES = {OrderStatus.PREPARING, OrderStatus.READY}

# Timestamp column stamped when an order enters a status
STATUS_TIMESTAMPS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.PICKED_UP: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.ESCROWED, PaymentStatus.REFUNDED},
    PaymentStatus.ESCROWED: {PaymentStatus.PAID, PaymentStatus.REFUNDED},
    PaymentStatus.PAID: set(),
    PaymentStatus.REFUNDED: set(),
}


def check_order_transition(current, requested) -> OrderStatus:
    """Raise unless `current -> requested` is an edge of the lifecycle graph."""
    current = OrderStatus(current)
    requested = OrderStatus(requested)

    if current in TERMINAL_STATUSES:
        raise OrderTerminal(current.value, requested.value)
    if requested not in ORDER_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current.value, requested.value)
    return requested


def check_payment_transition(current, requested) -> PaymentStatus:
    current = PaymentStatus(current)
    requested = PaymentStatus(requested)

    if requested not in PAYMENT_TRANSITIONS[current]:
        raise InvalidPaymentState(current.value, " or ".join(
            sorted(s.value for s in PAYMENT_TRANSITIONS if requested in PAYMENT_TRANSITIONS[s])
        ) or "none")
    return requested
