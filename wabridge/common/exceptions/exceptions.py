# wabridge/common/exceptions/exceptions.py
# =============================================================================
# Custom exceptions for wabridge
# =============================================================================

from typing import Optional


class WaBridgeException(Exception):
    """Base exception for wabridge"""
    pass


class ConfigurationError(WaBridgeException):
    """
    Raised for invalid configuration detected at load/startup time:
    unsupported database backend family, unknown or duplicate event kind
    names in subscription configuration. Fatal to startup.
    """
    pass


class InfrastructureError(WaBridgeException):
    """Raised for infrastructure errors"""
    pass


class QueryExecutionError(InfrastructureError):
    """Raised when a message/identity store call fails (timeout, syntax, connectivity)"""

    def __init__(self, operation: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.operation = operation
        self.cause = cause
        detail = message or (f"{type(cause).__name__}: {cause}" if cause else "query failed")
        super().__init__(f"Query '{operation}' failed: {detail}")


class DeliveryError(WaBridgeException):
    """Raised when a webhook delivery attempt to one recipient fails"""

    def __init__(
        self,
        recipient_url: str,
        message: str,
        status_code: Optional[int] = None,
        transient: bool = True,
    ):
        self.recipient_url = recipient_url
        self.status_code = status_code
        self.transient = transient
        super().__init__(f"Delivery to {recipient_url} failed: {message}")
