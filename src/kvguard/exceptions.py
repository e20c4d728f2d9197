"""kv-guard specific exceptions."""


class KVGuardError(Exception):
    """Base exception for kv-guard errors."""


class StoreUnavailableError(KVGuardError):
    """Exception raised when the backing store cannot serve an operation.

    This is the transport-failure member of the taxonomy. Components above
    the store client catch it at their boundary and apply their fail-open or
    fail-as-miss policy instead of propagating it to the request pipeline.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            operation: Optional name of the store operation that failed
        """
        self.operation = operation
        super().__init__(message)


class StoreTimeoutError(StoreUnavailableError):
    """Exception raised when a store operation exceeds its timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        """Initialize the exception.

        Args:
            operation: Name of the store operation that timed out
            timeout: Timeout in seconds that was exceeded
        """
        self.timeout = timeout
        super().__init__(
            f"Store operation '{operation}' timed out after {timeout}s",
            operation=operation,
        )


class StoreNotConnectedError(StoreUnavailableError):
    """Exception raised when the store client was used before connect()."""

    def __init__(self, operation: str | None = None) -> None:
        """Initialize the exception.

        Args:
            operation: Optional name of the attempted operation
        """
        super().__init__(
            "Store client is not connected. Call await store.connect() first.",
            operation=operation,
        )


class SerializationError(KVGuardError):
    """Exception raised when a value cannot be serialized for storage."""


class ConfigValidationError(KVGuardError):
    """Exception raised when configuration validation fails."""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        expected: str | None = None,
        received: str | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Error message
            field: Field name that failed validation
            expected: Expected value or type
            received: Received value or type
        """
        self.field = field
        self.expected = expected
        self.received = received

        full_message = message
        if field and expected and received:
            full_message = f"{message} (field='{field}', expected={expected}, received={received})"

        super().__init__(full_message)
