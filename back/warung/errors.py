"""
Domain errors raised by the order lifecycle and the table session guard.

Each error carries the HTTP status the API answers with; the handlers in
`warung.main` turn them into `{"detail": ..., "error": ...}` responses.
"""


class OrderError(Exception):
    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(OrderError):
    """Malformed create-order payload: empty items, bad quantity, price mismatch."""
    status_code = 400


class ActiveOrderExists(ValidationError):
    """The table already has an order that has not been paid."""
    status_code = 409

    def __init__(self, table_number: str, order_id: int):
        self.table_number = table_number
        self.order_id = order_id
        super().__init__(f"Table {table_number} already has an active order #{order_id}")


class SessionRequired(OrderError):
    status_code = 403


class TableLocked(OrderError):
    status_code = 423

    def __init__(self, table_number: str, message: str | None = None):
        self.table_number = table_number
        super().__init__(
            message or f"Table {table_number} is being used on another device. Please try again later."
        )


class InvalidTransition(OrderError):
    status_code = 409


class NotFound(OrderError):
    status_code = 404


class ConcurrentModification(OrderError):
    status_code = 409
