class MarketError(Exception):
    """Base error turned into a `{"success": false, "message": ...}` response."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MarketError):
    status_code = 400


class InsufficientStock(MarketError):
    status_code = 400


class AuthenticationError(MarketError):
    status_code = 401


class AuthorizationError(MarketError):
    status_code = 403


class NotFoundError(MarketError):
    status_code = 404


class StoreOwnerNotFound(NotFoundError):
    def __init__(self, message: str = "Store owner not found. Please contact an administrator."):
        super().__init__(message)


class InvalidStateTransition(MarketError):
    status_code = 409
