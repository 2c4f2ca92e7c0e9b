"""
Custom exception classes for the deposit relay.

The taxonomy mirrors the ways a deposit attempt can end: bad caller input,
gateway credential or push rejection, store failures, and the three benign
callback conditions the reconciler absorbs into an acknowledgment.
"""

from typing import Optional


class RelayError(Exception):
    """
    Base class for all relay errors.

    Attributes:
        message: Explanation of the error
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return string representation of the exception."""
        return f"{type(self).__name__}(message={self.message})"


class ValidationError(RelayError):
    """
    Exception raised when caller input is rejected before any side effect.

    Attributes:
        field: Name of the offending input field
        message: Explanation of the error
    """

    def __init__(self, field: str, message: str) -> None:
        """
        Initialize ValidationError exception.

        Args:
            field: Name of the offending input field
            message: Explanation of the error
        """
        self.field = field
        super().__init__(message)

    def __str__(self) -> str:
        return f"ValidationError(field={self.field}, message={self.message})"


class UpstreamAuthError(RelayError):
    """
    Exception raised when the gateway rejects the OAuth credential exchange.

    Attributes:
        status_code: HTTP status returned by the gateway, if any
        message: Explanation of the error
    """

    def __init__(
        self, message: str = "Gateway credential exchange failed",
        status_code: Optional[int] = None,
    ) -> None:
        """
        Initialize UpstreamAuthError exception.

        Args:
            message: Explanation of the error
            status_code: HTTP status returned by the gateway (optional)
        """
        self.status_code = status_code
        super().__init__(message)

    def __str__(self) -> str:
        return f"UpstreamAuthError(status_code={self.status_code}, message={self.message})"


class GatewayRejected(RelayError):
    """
    Exception raised when the gateway declines an STK push request.

    Covers explicit rejections (non-2xx status or non-zero ResponseCode) as
    well as local timeouts and transport failures, which are reported to the
    caller the same way.

    Attributes:
        response_code: Gateway ResponseCode or errorCode, if present
        message: Gateway message describing the rejection
    """

    def __init__(self, message: str, response_code: Optional[str] = None) -> None:
        """
        Initialize GatewayRejected exception.

        Args:
            message: Gateway message describing the rejection
            response_code: Gateway ResponseCode or errorCode (optional)
        """
        self.response_code = response_code
        super().__init__(message)

    def __str__(self) -> str:
        return (
            f"GatewayRejected(response_code={self.response_code}, "
            f"message={self.message})"
        )


class PersistenceError(RelayError):
    """
    Exception raised when the ledger store is unreachable or a write violates
    a constraint.

    Attributes:
        operation: Store operation that failed
        message: Explanation of the error
    """

    def __init__(self, operation: str, message: str = "Ledger store error") -> None:
        """
        Initialize PersistenceError exception.

        Args:
            operation: Store operation that failed (e.g. "create_pending")
            message: Explanation of the error
        """
        self.operation = operation
        super().__init__(f"{message} during {operation}")

    def __str__(self) -> str:
        return f"PersistenceError(operation={self.operation}, message={self.message})"


class MalformedCallback(RelayError):
    """Exception raised when a callback envelope cannot be parsed."""


class NotFound(RelayError):
    """
    Exception raised when a callback refers to an unknown checkout request.

    Attributes:
        checkout_request_id: The unmatched gateway identifier
    """

    def __init__(self, checkout_request_id: str) -> None:
        self.checkout_request_id = checkout_request_id
        super().__init__(f"No transaction for CheckoutRequestID {checkout_request_id}")


class AlreadyTerminal(RelayError):
    """
    Exception raised when a callback arrives for a record that already
    reached a terminal status.

    Attributes:
        record_id: Correlation record id
        status: The terminal status already stored
    """

    def __init__(self, record_id: str, status: str) -> None:
        self.record_id = record_id
        self.status = status
        super().__init__(f"Transaction {record_id} already {status}")
