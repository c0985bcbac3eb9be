"""Exceptions raised by the marketplace and mapped to HTTP responses in main.py."""


class MarketplaceError(Exception):
    """Base exception for all marketplace errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BadRequestError(MarketplaceError):
    """The client sent data that breaks a business rule."""

    status_code = 400


class AuthenticationError(MarketplaceError):
    status_code = 401


class ForbiddenError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404

    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(f"{resource} not found")


class AccountLockedError(MarketplaceError):
    status_code = 423

    def __init__(self):
        super().__init__("Account temporarily locked due to too many failed login attempts")


class InsufficientStockError(BadRequestError):
    """Raised when a product (or variant) cannot cover the requested quantity."""

    def __init__(self, name: str, available: int):
        self.name = name
        self.available = available
        super().__init__(f"Insufficient stock for {name}. Available: {available}")


class InvalidTransitionError(BadRequestError):
    """Raised when an order status change is not in the transition table."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot change order status from {current} to {target}")
