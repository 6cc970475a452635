"""
Checkout error taxonomy

Services raise these, the FastAPI handler in ``api.py`` renders them as
``{errorKind, message, details}`` bodies, and the HTTP clients rebuild the
same exception from a response so the orchestrator can tell a declined
payment from an unreachable service.
"""


class CheckoutError(Exception):
    error_kind = "CheckoutError"
    status_code = 500

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_body(self) -> dict:
        return {
            "errorKind": self.error_kind,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_body(cls, body: dict) -> "CheckoutError":
        return cls(body.get("message", ""), **(body.get("details") or {}))


class ValidationError(CheckoutError):
    """Rejected before any side effect (empty or missing cart, bad quantity)."""
    error_kind = "ValidationError"
    status_code = 400


class InsufficientStockError(CheckoutError):
    error_kind = "InsufficientStock"
    status_code = 409

    @property
    def sku(self) -> str | None:
        return self.details.get("sku")


class PaymentDeclinedError(CheckoutError):
    error_kind = "PaymentDeclined"
    status_code = 402

    @property
    def reason(self) -> str | None:
        return self.details.get("reason")


class DownstreamUnavailableError(CheckoutError):
    """Network failure, 5xx or timeout on a downstream call."""
    error_kind = "DownstreamUnavailable"
    status_code = 503


class StepTimeoutError(DownstreamUnavailableError):
    pass


class InconsistentStateError(CheckoutError):
    """Failure after inventory commit. Never compensated automatically."""
    error_kind = "InconsistentState"
    status_code = 500


class NotFoundError(CheckoutError):
    error_kind = "NotFound"
    status_code = 404


class ReservationNotFoundError(NotFoundError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class CartNotFoundError(NotFoundError):
    pass


class AlreadyTerminalError(CheckoutError):
    error_kind = "AlreadyTerminal"
    status_code = 409


class IdempotencyConflictError(CheckoutError):
    """An idempotency key was reused with different parameters."""
    error_kind = "IdempotencyConflict"
    status_code = 409


class SagaCancelledError(CheckoutError):
    error_kind = "Cancelled"
    status_code = 409


class CancellationRejectedError(CheckoutError):
    error_kind = "CancellationRejected"
    status_code = 409


ERROR_KINDS: dict[str, type[CheckoutError]] = {
    cls.error_kind: cls
    for cls in (
        CheckoutError,
        ValidationError,
        InsufficientStockError,
        PaymentDeclinedError,
        DownstreamUnavailableError,
        InconsistentStateError,
        NotFoundError,
        AlreadyTerminalError,
        IdempotencyConflictError,
        SagaCancelledError,
        CancellationRejectedError,
    )
}


def error_from_body(body: dict, default: type[CheckoutError] = CheckoutError) -> CheckoutError:
    """Rebuild the exception a service rendered into an error body."""
    cls = ERROR_KINDS.get(body.get("errorKind", ""), default)
    return cls.from_body(body)
