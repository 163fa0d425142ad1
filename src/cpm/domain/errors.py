class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class AuthorizationError(AppError):
    pass


class NotAuthenticatedError(AuthorizationError):
    pass


class StoreError(AppError):
    """Transport or protocol failure talking to the price store."""


class PriceReadError(AppError):
    pass


class PriceWriteError(AppError):
    def __init__(self, message: str, step: str | None = None):
        super().__init__(message)
        self.step = step


class PriceConflictError(PriceWriteError):
    """The active price changed underneath the update."""
