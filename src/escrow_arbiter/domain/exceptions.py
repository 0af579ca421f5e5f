"""Domain exceptions for the Escrow Arbiter.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware:

    ValidationError       -> 400
    AuthorizationError    -> 403
    NotFoundError         -> 404
    StateConflictError    -> 400
    DuplicateOperationError -> 409
    PersistenceError      -> 500

PaymentProcessorError never reaches a caller of the resolution workflow; it is
recorded on the settlement operation instead.
"""


class ArbiterError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ARBITER_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Input / rule violations ---


class ValidationError(ArbiterError):
    """Malformed input or a request that the current state does not allow."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class DuplicateActiveDisputeError(ValidationError):
    """Raised when a job already has an open, under-review or resolving dispute."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            message=f"An active dispute already exists for job: {job_id}",
            code="ACTIVE_DISPUTE_EXISTS",
        )
        self.job_id = job_id


class AuthorizationError(ArbiterError):
    """Raised when the caller is not a party to the job, or not an admin."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="FORBIDDEN")


# --- Lookups ---


class NotFoundError(ArbiterError):
    """Base for missing records."""


class JobNotFoundError(NotFoundError):
    """Raised when a job ID does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            message=f"Job not found: {job_id}",
            code="JOB_NOT_FOUND",
        )
        self.job_id = job_id


class DisputeNotFoundError(NotFoundError):
    """Raised when a dispute ID does not exist."""

    def __init__(self, dispute_id: str) -> None:
        super().__init__(
            message=f"Dispute not found: {dispute_id}",
            code="DISPUTE_NOT_FOUND",
        )
        self.dispute_id = dispute_id


# --- State ---


class StateConflictError(ArbiterError):
    """Raised when a dispute was already resolved or claimed by another caller."""

    def __init__(self, message: str, current_state: str | None = None) -> None:
        super().__init__(message=message, code="STATE_CONFLICT")
        self.current_state = current_state


class InvalidStateTransitionError(StateConflictError):
    """Raised when a state machine refuses a transition.

    Example: a job in COMPLETED cannot be put ON_HOLD.
    """

    def __init__(self, current_state: str, attempted_event: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {current_state} -/-> {attempted_event}",
            current_state=current_state,
        )
        self.code = "INVALID_STATE_TRANSITION"
        self.attempted_event = attempted_event


# --- Collaborators ---


class PaymentProcessorError(ArbiterError):
    """Raised when a transfer or refund call fails or times out."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message=message, code="PAYMENT_PROCESSOR_ERROR")
        self.retryable = retryable


class PersistenceError(ArbiterError):
    """Raised when the store fails a write; further progress must stop."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PERSISTENCE_ERROR")


# --- Idempotency ---


class DuplicateOperationError(ArbiterError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )
        self.idempotency_key = idempotency_key
