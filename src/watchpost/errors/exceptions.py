"""Custom exception classes for watchpost."""


class WatchpostError(Exception):
    """Base exception for watchpost."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class ValidationError(WatchpostError):
    """Input validation failure (bad rule type, malformed domain, ...)."""

    def __init__(self, message: str, details=None):
        super().__init__("VALIDATION_ERROR", message, details, status_code=400)


class NotFoundError(WatchpostError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id):
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class AuthenticationError(WatchpostError):
    """Authentication required or credentials invalid."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__("AUTHENTICATION_ERROR", message, status_code=401)


class AuthorizationError(WatchpostError):
    """Insufficient permissions."""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__("AUTHORIZATION_ERROR", message, status_code=403)


class ConflictError(WatchpostError):
    """Resource state conflict."""

    def __init__(self, message: str, details=None):
        super().__init__("CONFLICT", message, details, status_code=409)


class InvalidTransitionError(ConflictError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"{entity} cannot move from '{current}' to '{target}'",
            details={"current": current, "target": target},
        )
        self.code = "INVALID_TRANSITION"
