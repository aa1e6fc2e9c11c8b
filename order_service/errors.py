"""Service exceptions and the HTTP status each one maps to."""


class ServiceError(Exception):
    """Base exception for all order-service errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ServiceError):
    """Malformed input or a missing required field."""

    status_code = 400


class InvalidAmount(ValidationError):
    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Amount must be greater than 0 (got {amount})")


class Unauthorized(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class Conflict(ServiceError):
    """A compare-and-swap lost its race, or the row was already processed."""

    status_code = 409


class InvalidTransition(ServiceError):
    status_code = 400

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change status from {current} to {requested}")


class OrderTerminal(InvalidTransition):
    def __init__(self, current: str, requested: str):
        super().__init__(current, requested)
        self.message = f"Order is already {current}; cannot move to {requested}"
        self.args = (self.message,)


class InvalidPaymentState(ServiceError):
    status_code = 400

    def __init__(self, current: str, expected: str):
        self.current = current
        self.expected = expected
        super().__init__(f"Payment status is {current}; expected {expected}")


class InsufficientFunds(ServiceError):
    status_code = 400

    def __init__(self, balance, required):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient wallet balance: {balance} available, {required} required")


class GracePeriodActive(ServiceError):
    """Restaurant tried to act inside the customer's free-cancellation window."""

    status_code = 400


class RestaurantTimeout(ServiceError):
    """The restaurant acceptance window has closed."""

    status_code = 400


class CancellationNotAllowed(ServiceError):
    status_code = 400

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)
