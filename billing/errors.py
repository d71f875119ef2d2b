"""Error types shared by clients, services and routes"""

from typing import Any, Optional


class BillingPortalError(Exception):
    """Base class for all portal errors"""
    pass


class ConfigurationError(BillingPortalError):
    """Missing or invalid configuration (credentials, base URLs, connection string)"""
    pass


class UpstreamError(BillingPortalError):
    """Base class for failures reported by an upstream system"""
    pass


class UpstreamBusinessError(UpstreamError):
    """Upstream answered but flagged the operation as failed (``success: false``)"""

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class UpstreamTransportError(UpstreamError):
    """Non-200 response or network failure"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamRateLimitError(UpstreamTransportError):
    """HTTP 429 from the primary invoicing service"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        body: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, body=body)
        self.retry_after = retry_after


class LegacySessionError(UpstreamTransportError):
    """The legacy login exchange did not yield a session cookie"""
    pass


class RowValidationError(BillingPortalError):
    """A batch or upload row is missing fields required for its action"""
    pass


class PersistenceError(BillingPortalError):
    """A batch upsert failed and was rolled back; nothing was written"""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.original = original
        self.written = 0
