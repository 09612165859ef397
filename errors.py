"""
Error taxonomy for the order API.

Every error carries the HTTP status it maps to and a short machine-readable
code; main.py turns them into the {status, data: {message, error}} envelope.
"""


class OrderError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderError):
    status_code = 400
    code = "validation_error"


class NotFoundError(OrderError):
    status_code = 404
    code = "not_found"


class ForbiddenError(OrderError):
    status_code = 403
    code = "forbidden"


class InvalidStateError(OrderError):
    status_code = 400
    code = "invalid_state"


class InsufficientStockError(OrderError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, message: str, sku: str = None):
        super().__init__(message)
        self.sku = sku


class InsufficientPointsError(OrderError):
    status_code = 400
    code = "insufficient_points"


class InfrastructureError(OrderError):
    status_code = 500
    code = "infrastructure_error"
