class RolloverError(Exception):
    """Base class for errors raised by the ledger services."""


class NotAuthenticatedError(RolloverError):
    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class NotFoundError(RolloverError, ValueError):
    pass


class ValidationError(RolloverError, ValueError):
    pass


class PersistenceError(RolloverError):
    pass
