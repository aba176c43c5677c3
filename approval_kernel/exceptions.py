"""
Typed exception hierarchy for the approval kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the HTTP layer, the escalation ticker, delivery workers) must react
to failures by TYPE, never by parsing messages:

    try:
        machine.decide(request_id, approver_id, DecisionOutcome.APPROVE)
    except AlreadyDecidedError as e:
        respond(status=e.http_status, code=e.code, previous=e.previous_outcome)

Every exception carries:
  1. a ``code`` class attribute (machine-readable, API-safe)
  2. an ``http_status`` hint for the excluded transport layer
  3. structured attributes (request id, approver id, ...) instead of just text

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ApprovalEngineError (base)
    |
    +-- ValidationError
    +-- UnauthenticatedError
    +-- NotFoundError
    +-- InvalidStateError
    +-- UnauthorizedDecisionError
    +-- AlreadyDecidedError
    +-- DuplicateRequestError
    +-- InvalidDelegationError
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    +-- DownstreamUnavailableError
    +-- StrategyNotFoundError
    +-- ConsumerNotRegisteredError
    +-- ImmutabilityViolationError

===============================================================================
PROPAGATION
===============================================================================

   - State-machine errors           -> raised synchronously to the caller
   - AlreadyDecidedError            -> only for a DIFFERENT outcome; an identical
                                       resubmission is a silent no-op
   - ConcurrentModificationError    -> raised only after internal retries
   - DownstreamUnavailableError     -> never leaves the dispatcher
"""


class ApprovalEngineError(Exception):
    """
    Base exception for all approval engine errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_ENGINE_ERROR"
    http_status: int = 500


class ValidationError(ApprovalEngineError):
    """Malformed input. The caller's fault; never retried."""

    code: str = "VALIDATION_ERROR"
    http_status: int = 422

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UnauthenticatedError(ApprovalEngineError):
    """An operation arrived without a caller identity."""

    code: str = "UNAUTHENTICATED"
    http_status: int = 401

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Operation '{operation}' requires a caller identity")


class NotFoundError(ApprovalEngineError):
    """Entity with the given id does not exist."""

    code: str = "NOT_FOUND"
    http_status: int = 404

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class InvalidStateError(ApprovalEngineError):
    """An illegal lifecycle transition was attempted."""

    code: str = "INVALID_STATE"
    http_status: int = 409

    def __init__(self, request_id: str, current_status: str, attempted: str):
        self.request_id = request_id
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            f"Approval request {request_id} is '{current_status}'; "
            f"cannot {attempted}"
        )


class UnauthorizedDecisionError(ApprovalEngineError):
    """The actor is not an effective approver for this request right now."""

    code: str = "UNAUTHORIZED_DECISION"
    http_status: int = 403

    def __init__(self, request_id: str, approver_id: str, reason: str):
        self.request_id = request_id
        self.approver_id = approver_id
        self.reason = reason
        super().__init__(
            f"Approver {approver_id} may not act on request {request_id}: {reason}"
        )


class AlreadyDecidedError(ApprovalEngineError):
    """The approver already recorded a different outcome."""

    code: str = "ALREADY_DECIDED"
    http_status: int = 409

    def __init__(self, request_id: str, approver_id: str, previous_outcome: str):
        self.request_id = request_id
        self.approver_id = approver_id
        self.previous_outcome = previous_outcome
        super().__init__(
            f"Approver {approver_id} already decided '{previous_outcome}' "
            f"on request {request_id}"
        )


class DuplicateRequestError(ApprovalEngineError):
    """An open request with the same fingerprint already exists."""

    code: str = "DUPLICATE_REQUEST"
    http_status: int = 409

    def __init__(self, existing_request_id: str, action_type: str, requester_id: str):
        self.existing_request_id = existing_request_id
        self.action_type = action_type
        self.requester_id = requester_id
        super().__init__(
            f"Open request {existing_request_id} already exists for "
            f"{requester_id}/{action_type}"
        )


class InvalidDelegationError(ApprovalEngineError):
    """A delegation violates span, party, scope or authority constraints."""

    code: str = "INVALID_DELEGATION"
    http_status: int = 422

    def __init__(self, from_approver_id: str, to_approver_id: str, reason: str):
        self.from_approver_id = from_approver_id
        self.to_approver_id = to_approver_id
        self.reason = reason
        super().__init__(
            f"Invalid delegation {from_approver_id} -> {to_approver_id}: {reason}"
        )


class ConcurrencyError(ApprovalEngineError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"
    http_status: int = 409


class ConcurrentModificationError(ConcurrencyError):
    """Optimistic write kept losing the race after bounded retries."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str, attempts: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently; "
            f"gave up after {attempts} attempt(s)"
        )


class DownstreamUnavailableError(ApprovalEngineError):
    """The queue broker (or another downstream) is unreachable."""

    code: str = "DOWNSTREAM_UNAVAILABLE"
    http_status: int = 503

    def __init__(self, component: str, reason: str):
        self.component = component
        self.reason = reason
        super().__init__(f"{component} unavailable: {reason}")


class StrategyNotFoundError(ApprovalEngineError):
    """No resolution strategy is registered under the requested key."""

    code: str = "STRATEGY_NOT_FOUND"
    http_status: int = 422

    def __init__(self, strategy_key: str, available: tuple[str, ...] = ()):
        self.strategy_key = strategy_key
        self.available = available
        super().__init__(
            f"No resolution strategy registered for '{strategy_key}'. "
            f"Available: {list(available)}"
        )


class ConsumerNotRegisteredError(ApprovalEngineError):
    """No consumer is registered for a queued event's topic."""

    code: str = "CONSUMER_NOT_REGISTERED"

    def __init__(self, topic: str):
        self.topic = topic
        super().__init__(f"No consumer registered for topic '{topic}'")


class ImmutabilityViolationError(ApprovalEngineError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id}: {reason}")
