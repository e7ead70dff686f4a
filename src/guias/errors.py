"""Error kinds raised by the service layer.

The HTTP layer maps each kind to a status code; services never raise
``HTTPException`` themselves.
"""


class ServiceError(Exception):
    """Base class for expected service failures."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInputError(ServiceError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class InfrastructureError(ServiceError):
    """Unexpected persistence or delivery failure."""

    status_code = 500
