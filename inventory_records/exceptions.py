
class ApplicationError(Exception):
    """Base class for application-specific errors."""
    pass

class ValidationError(ApplicationError):
    """Raised for malformed or out-of-range input, before any side effect."""
    def __init__(self, message="Validation failed.", errors=None):
        super().__init__(message)
        self.errors = errors or []

class NotFoundError(ApplicationError):
    """Raised when an item id does not resolve in the store."""
    pass

class ForbiddenError(ApplicationError):
    """Raised when a non-admin identity targets an item it does not own."""
    pass

class StoreError(ApplicationError):
    """Raised for persistence backend failures. Always surfaced to the caller."""
    def __init__(self, message="A database error occurred.", original_exception=None):
        super().__init__(message)
        self.original_exception = original_exception

class CacheError(ApplicationError):
    """Cache backend failure. Recovered locally, never surfaced."""
    def __init__(self, message="A cache error occurred.", original_exception=None):
        super().__init__(message)
        self.original_exception = original_exception

class QueueError(ApplicationError):
    """Queue backend failure. Recovered locally, never surfaced."""
    def __init__(self, message="A queue error occurred.", original_exception=None):
        super().__init__(message)
        self.original_exception = original_exception
