"""Domain errors raised on the request path before any ledger submission."""


class MatchmakerError(Exception):
    """Base class for request-path errors."""
    pass


class ValidationError(MatchmakerError):
    """Raised for malformed input such as an invalid UUID or date."""
    pass


class ConflictError(MatchmakerError):
    """Raised when an entity's state does not permit the requested transition."""
    pass


class NotFoundError(MatchmakerError):
    """Raised when a referenced local entity is absent."""
    def __init__(self, item: str):
        self.item = item
        super().__init__(f"{item} not found")


class ServiceUnavailableError(MatchmakerError):
    """Raised when the identity service, attachment store or ledger node cannot be reached."""
    def __init__(self, service: str, message: str = ''):
        self.service = service
        super().__init__(f"{service} unavailable" + (f": {message}" if message else ''))
